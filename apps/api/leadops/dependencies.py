from __future__ import annotations

from functools import lru_cache

from leadops.commitments.engine import CommitmentEngine
from leadops.commitments.escalation import EscalationChain
from leadops.intake.service import IntakeService
from leadops.sequences.engine import SequencingEngine
from leadops.sequences.sweeper import StaleLeadSweeper


@lru_cache
def get_intake_service() -> IntakeService:
    return IntakeService()


def get_commitment_engine() -> CommitmentEngine:
    return get_intake_service().commitments


def get_sequencing_engine() -> SequencingEngine:
    return get_intake_service().sequences


@lru_cache
def get_escalation_chain() -> EscalationChain:
    return EscalationChain(messaging=get_intake_service().messaging)


@lru_cache
def get_stale_lead_sweeper() -> StaleLeadSweeper:
    return StaleLeadSweeper(messaging=get_intake_service().messaging)
