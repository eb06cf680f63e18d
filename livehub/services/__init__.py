from livehub.services.live_broadcast import (
    EndOfStream,
    Gap,
    HubClosed,
    HubError,
    HubFailed,
    HubState,
    Inlet,
    LiveHub,
    OverflowPolicy,
    ProducerContractViolation,
    SubscriberOverflow,
    Subscription,
    SubscriptionRegistry,
)
from livehub.services.derived_view import DerivedView, chain
from livehub.services.batch_ingest import BatchWriteRejected, BatchWriter, IngestResult

__all__ = [
    "BatchWriteRejected",
    "BatchWriter",
    "DerivedView",
    "EndOfStream",
    "Gap",
    "HubClosed",
    "HubError",
    "HubFailed",
    "HubState",
    "IngestResult",
    "Inlet",
    "LiveHub",
    "OverflowPolicy",
    "ProducerContractViolation",
    "SubscriberOverflow",
    "Subscription",
    "SubscriptionRegistry",
    "chain",
]
