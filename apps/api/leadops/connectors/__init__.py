from leadops.connectors.alerts import AlertClient, SlackAlertClient, StubAlertClient, build_alert_client
from leadops.connectors.crm import CRMClient, PipedriveCRMClient, StubCRMClient, build_crm_client
from leadops.connectors.messaging import (
    EvolutionMessagingClient,
    MessagingClient,
    StubMessagingClient,
    build_messaging_client,
)

__all__ = [
    "AlertClient",
    "SlackAlertClient",
    "StubAlertClient",
    "build_alert_client",
    "CRMClient",
    "PipedriveCRMClient",
    "StubCRMClient",
    "build_crm_client",
    "MessagingClient",
    "EvolutionMessagingClient",
    "StubMessagingClient",
    "build_messaging_client",
]
