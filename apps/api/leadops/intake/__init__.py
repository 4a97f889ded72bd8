from leadops.intake.models import InboundEvent

__all__ = ["InboundEvent"]
