from leadops.leads.models import Lead, LeadActivity

__all__ = ["Lead", "LeadActivity"]
