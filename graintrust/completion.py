# graintrust/completion.py

from typing import Iterable, Mapping

from graintrust.models.domain import (
    CompletionReport,
    Stage,
    StageDeficiency,
    StagePolicy,
)
from graintrust.stores import BatchStore


def assess(stage_counts: Mapping[str, int], policy: StagePolicy) -> CompletionReport:
    """
    The completion predicate.

    A batch is complete iff every configured stage is present and carries at
    least ``policy.min_evidence_per_stage`` evidence items. ``stage_counts``
    maps stage name to evidence count; a stage absent from the mapping is
    reported as not present.

    The evaluator feeds it pending relational evidence, the certificate
    issuer feeds it ledger-confirmed stages, so both gates share one shape.
    """
    missing = []
    for ordinal, name in enumerate(policy.stage_names):
        present = name in stage_counts
        count = stage_counts.get(name, 0)
        if not present or count < policy.min_evidence_per_stage:
            missing.append(
                StageDeficiency(
                    stage=name,
                    ordinal=ordinal,
                    present=present,
                    count=count,
                    deficit=max(policy.min_evidence_per_stage - count, 0),
                )
            )
    return CompletionReport(
        complete=not missing,
        missing=missing,
        stage_counts={name: stage_counts.get(name, 0) for name in policy.stage_names},
    )


def stage_counts_of(stages: Iterable[Stage]) -> dict[str, int]:
    return {stage.name: stage.evidence_count for stage in stages}


class CompletionEvaluator:
    def __init__(self, store: BatchStore, policy: StagePolicy):
        self.store = store
        self.policy = policy

    async def evaluate(self, batch_id: str) -> CompletionReport:
        await self.store.get_batch(batch_id)
        return self.evaluate_stages(await self.store.list_stages(batch_id))

    def evaluate_stages(self, stages: Iterable[Stage]) -> CompletionReport:
        return assess(stage_counts_of(stages), self.policy)
