"""Microsoft Graph collaborators: authenticated transport and list delta feeds."""

from src.leadsync.graph.feed import SharePointDeltaFeed, parse_delta_page
from src.leadsync.graph.transport import (
    GRAPH_BATCH_LIMIT,
    BatchRequest,
    BatchResponse,
    GraphTransport,
    StaticTokenProvider,
    TokenProvider,
)

__all__ = [
    "GRAPH_BATCH_LIMIT",
    "BatchRequest",
    "BatchResponse",
    "GraphTransport",
    "SharePointDeltaFeed",
    "StaticTokenProvider",
    "TokenProvider",
    "parse_delta_page",
]
