# graintrust/identity.py

import asyncio

import httpx
import structlog

from graintrust.config import Settings
from graintrust.errors import (
    AdminIdentityMissingError,
    CredentialAuthorityUnavailableError,
    RegistrationConflictError,
)
from graintrust.locks import KeyedLocks
from graintrust.models.domain import IdentityHandle
from graintrust.stores import CredentialStore

logger = structlog.get_logger(__name__)


def identity_label(principal_id: str) -> str:
    return f"farmer_{principal_id}"


class CertificateAuthorityClient:
    """Register / enroll calls against the Fabric CA REST front."""

    def __init__(self, ca_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.ca_url = ca_url
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict, admin: dict | None = None) -> dict:
        headers = {"X-CA-Registrar": admin["label"]} if admin else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.ca_url, timeout=httpx.Timeout(self.timeout), transport=self.transport
            ) as client:
                resp = await client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CredentialAuthorityUnavailableError(f"Credential authority unreachable: {e}")

        if resp.status_code == 409 or "already registered" in resp.text.lower():
            raise RegistrationConflictError(
                f"Identity {payload.get('enrollmentID')} is already registered",
                enrollmentId=payload.get("enrollmentID"),
            )
        if not resp.is_success:
            raise CredentialAuthorityUnavailableError(
                f"Credential authority {path} failed with HTTP {resp.status_code}",
                status=resp.status_code,
            )
        return resp.json()

    async def register(self, admin: dict, enrollment_id: str, attrs: dict, affiliation: str) -> str:
        body = await self._post(
            "/register",
            {
                "affiliation": affiliation,
                "enrollmentID": enrollment_id,
                "role": "client",
                "attrs": [{"name": k, "value": v, "ecert": True} for k, v in attrs.items()],
            },
            admin=admin,
        )
        return body["secret"]

    async def enroll(self, enrollment_id: str, secret: str) -> dict:
        body = await self._post("/enroll", {"enrollmentID": enrollment_id, "enrollmentSecret": secret})
        return {"certificate": body["certificate"], "private_key": body["privateKey"]}


class IdentityProvisioner:
    def __init__(self, wallet: CredentialStore, ca: CertificateAuthorityClient, settings: Settings):
        self.wallet = wallet
        self.ca = ca
        self.settings = settings
        self._locks = KeyedLocks()

    async def ensure_identity(self, principal_id: str, principal_name: str) -> IdentityHandle:
        """
        Returns the signing identity for a principal, registering and
        enrolling one on first use. Calls for the same principal are
        serialized. The registration secret is stored before enrolling, so a
        registration conflict is resolved by enrolling again with the stored
        secret, or, when there is none, by reading the wallet again.
        """
        label = identity_label(principal_id)

        async with self._locks.hold(principal_id):
            existing = await self.wallet.get(label)
            if existing:
                return CredentialStore.to_handle(existing)

            admin = await self._admin_identity()

            try:
                secret = await self.ca.register(
                    admin,
                    label,
                    {"farmerName": principal_name, "farmerId": principal_id},
                    self.settings.identity_affiliation,
                )
            except RegistrationConflictError:
                logger.info("identity_registration_conflict", principal_id=principal_id)
                secret = await self.wallet.enrollment_secret(label)
                if secret is None:
                    return await self._await_registered(label)
                logger.info("identity_enrollment_resumed", principal_id=principal_id, label=label)
            else:
                await self.wallet.save_enrollment_secret(label, principal_id, secret)

            credentials = await self.ca.enroll(label, secret)
            doc = await self.wallet.put(label, principal_id, credentials)
            logger.info("identity_registered", principal_id=principal_id, label=label)
            return CredentialStore.to_handle(doc)

    async def service_identity(self) -> IdentityHandle:
        """Administrative identity used for read-only ledger queries."""
        return CredentialStore.to_handle(await self._admin_identity())

    async def _admin_identity(self) -> dict:
        admin = await self.wallet.get(self.settings.admin_identity_label)
        if not admin:
            raise AdminIdentityMissingError(self.settings.admin_identity_label)
        return admin

    async def _await_registered(self, label: str) -> IdentityHandle:
        # The competing registrar may still be enrolling; give it a few chances to persist.
        for attempt in range(self.settings.identity_conflict_rechecks):
            existing = await self.wallet.get(label)
            if existing:
                return CredentialStore.to_handle(existing)
            await asyncio.sleep(self.settings.identity_conflict_delay_seconds * (attempt + 1))

        existing = await self.wallet.get(label)
        if existing:
            return CredentialStore.to_handle(existing)
        raise CredentialAuthorityUnavailableError(
            f"Identity {label} is registered with the authority but not yet in the wallet",
            identity=label,
        )
