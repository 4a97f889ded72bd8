from leadops.commitments.models import CommitmentEvent, EscalationRecord

__all__ = ["CommitmentEvent", "EscalationRecord"]
