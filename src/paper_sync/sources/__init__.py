"""Remote bibliographic sources."""

from paper_sync.sources.ads import AdsClient, ads_doc_to_edge, ads_doc_to_record
from paper_sync.sources.base import RemoteLookupClient, RemoteLookupError

__all__ = [
    "AdsClient",
    "RemoteLookupClient",
    "RemoteLookupError",
    "ads_doc_to_edge",
    "ads_doc_to_record",
]
