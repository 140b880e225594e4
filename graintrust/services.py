# graintrust/services.py

import httpx
from fastapi import Request

from graintrust.blockchain_client import LedgerGateway
from graintrust.certificates import CertificateIssuer
from graintrust.completion import CompletionEvaluator
from graintrust.config import Settings
from graintrust.database import Database
from graintrust.dispatcher import SubmissionDispatcher
from graintrust.identity import CertificateAuthorityClient, IdentityProvisioner
from graintrust.intake import EvidenceIntake
from graintrust.orchestrator import LedgerSubmissionOrchestrator
from graintrust.reconciler import StateReconciler
from graintrust.stores import BatchStore, CertificateStore, CredentialStore, PrincipalDirectory


class Services:
    """Wires the collaborators for one application instance."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        ledger_transport: httpx.AsyncBaseTransport | None = None,
        ca_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.database = database
        policy = settings.stage_policy

        self.batches = BatchStore(database)
        self.principals = PrincipalDirectory(database)
        self.wallet = CredentialStore(database, settings.msp_id)
        self.certificate_store = CertificateStore(database)

        self.gateway = LedgerGateway.from_settings(settings, transport=ledger_transport)
        self.ca = CertificateAuthorityClient(
            settings.fabric_ca_url, timeout=settings.ca_timeout_seconds, transport=ca_transport
        )
        self.provisioner = IdentityProvisioner(self.wallet, self.ca, settings)

        self.evaluator = CompletionEvaluator(self.batches, policy)
        self.reconciler = StateReconciler(self.batches, database)
        self.orchestrator = LedgerSubmissionOrchestrator(
            self.batches,
            self.evaluator,
            self.principals,
            self.provisioner,
            self.gateway,
            self.reconciler,
            settings,
        )
        self.issuer = CertificateIssuer(
            self.batches, self.certificate_store, self.provisioner, self.gateway, database, settings
        )
        self.dispatcher = SubmissionDispatcher(
            self.batches,
            self.evaluator,
            self.orchestrator,
            self.issuer,
            max_concurrency=settings.worker_pool_size,
        )
        self.intake = EvidenceIntake(self.batches, self.principals, self.evaluator, policy)


def get_services(request: Request) -> Services:
    return request.app.state.services
