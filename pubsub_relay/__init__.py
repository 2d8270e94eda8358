"""
Pub/Sub -> Bigtable -> Pub/Sub event relay.

This package provides:
- A base64/JSON codec for Pub/Sub message bodies
- A column formatter for the Bigtable `meta`/`data` families
- The message processor (store-then-forward)
- Bigtable and Pub/Sub collaborators (lazy-imported GCP clients)
"""

from .codec import DecodeFailureKind, classify_payload, decode_body
from .envelope import InboundEnvelope
from .processor import MessageProcessor, RelayOutcome

__all__ = [
    "DecodeFailureKind",
    "InboundEnvelope",
    "MessageProcessor",
    "RelayOutcome",
    "classify_payload",
    "decode_body",
]
