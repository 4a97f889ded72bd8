from leadops.sequences.models import FollowUpSequence, FollowUpStep, SequenceExecution

__all__ = ["FollowUpSequence", "FollowUpStep", "SequenceExecution"]
