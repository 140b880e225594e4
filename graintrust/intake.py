# graintrust/intake.py
"""Evidence intake: the first image of a batch registers it, later images append."""

from typing import Literal, Optional, Union

from pydantic import BaseModel
import structlog

from graintrust.completion import CompletionEvaluator
from graintrust.errors import BatchNotFoundError, ValidationError
from graintrust.models.api import BatchDetails, EvidenceRequest, FarmerDetails
from graintrust.models.domain import Batch, CompletionReport, Principal, StagePolicy
from graintrust.stores import BatchStore, PrincipalDirectory

logger = structlog.get_logger(__name__)


class FirstEvidence(BaseModel):
    kind: Literal["first"] = "first"
    farmer: FarmerDetails
    batch: BatchDetails
    stage: str
    locator: str


class SubsequentEvidence(BaseModel):
    kind: Literal["subsequent"] = "subsequent"
    batch_id: Optional[str] = None
    batch_code: Optional[str] = None
    stage: str
    locator: str


EvidenceSubmission = Union[FirstEvidence, SubsequentEvidence]


def is_first_image(request: EvidenceRequest) -> bool:
    return request.isFirstImage


def parse_evidence_submission(request: EvidenceRequest) -> EvidenceSubmission:
    if is_first_image(request):
        if request.farmerDetails is None or request.batchDetails is None:
            raise ValidationError("First image requires farmerDetails and batchDetails")
        return FirstEvidence(
            farmer=request.farmerDetails,
            batch=request.batchDetails,
            stage=request.stageName,
            locator=request.imageUrl,
        )

    if not request.batchId and not request.batchCode:
        raise ValidationError("Missing required field: batchId or batchCode")
    return SubsequentEvidence(
        batch_id=request.batchId,
        batch_code=request.batchCode,
        stage=request.stageName,
        locator=request.imageUrl,
    )


class EvidenceIntake:
    def __init__(self, store: BatchStore, directory: PrincipalDirectory, evaluator: CompletionEvaluator, policy: StagePolicy):
        self.store = store
        self.directory = directory
        self.evaluator = evaluator
        self.policy = policy

    async def record(self, submission: EvidenceSubmission) -> tuple[Batch, bool, CompletionReport]:
        if submission.stage not in self.policy.stage_names:
            raise ValidationError(
                f"Unknown stage '{submission.stage}'",
                allowedStages=list(self.policy.stage_names),
            )

        if isinstance(submission, FirstEvidence):
            batch = await self._register(submission)
        else:
            batch = await self._resolve(submission)

        added = await self.store.append_evidence(batch.batch_id, submission.stage, submission.locator)
        report = await self.evaluator.evaluate(batch.batch_id)
        logger.info(
            "evidence_recorded",
            batch_code=batch.batch_code,
            stage=submission.stage,
            added=added,
            complete=report.complete,
        )
        return batch, added, report

    async def _register(self, submission: FirstEvidence) -> Batch:
        existing = await self.store.find_by_code(submission.batch.batchCode)
        if existing:
            return existing

        farmer = submission.farmer
        await self.directory.upsert_principal(
            Principal(id=farmer.id, name=farmer.name, email=farmer.email)
        )
        details = submission.batch
        return await self.store.register_batch(
            batch_code=details.batchCode,
            owner_id=farmer.id,
            farmer_name=farmer.name,
            crop_type=details.cropType,
            quantity=f"{details.quantity} {details.unit}",
            location=farmer.location,
            variety=details.variety,
            stage_names=list(self.policy.stage_names),
        )

    async def _resolve(self, submission: SubsequentEvidence) -> Batch:
        if submission.batch_id:
            return await self.store.get_batch(submission.batch_id)
        batch = await self.store.find_by_code(submission.batch_code)
        if batch is None:
            raise BatchNotFoundError(submission.batch_code)
        return batch
