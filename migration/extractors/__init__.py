from migration.extractors.api_client import SourceAPIClient, TransportResponse
from migration.extractors.paginated_reader import (
    DetailFetch,
    FetchAllResult,
    PageFetch,
    PaginatedSourceReader,
    StreamSummary,
)

__all__ = [
    "SourceAPIClient",
    "TransportResponse",
    "PaginatedSourceReader",
    "PageFetch",
    "FetchAllResult",
    "StreamSummary",
    "DetailFetch",
]
