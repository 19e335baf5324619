"""External service clients consumed by row pipelines."""

from sheet_tasks.clients.base import (
    QaAnswer,
    QaClient,
    SearchClient,
    SearchHit,
    ServiceCallError,
    ServiceResponseError,
    SimilarityClient,
)
from sheet_tasks.clients.http import (
    HttpQaClient,
    HttpSearchClient,
    HttpSimilarityClient,
    ServiceClients,
    build_service_clients,
)

__all__ = [
    "HttpQaClient",
    "HttpSearchClient",
    "HttpSimilarityClient",
    "QaAnswer",
    "QaClient",
    "SearchClient",
    "SearchHit",
    "ServiceCallError",
    "ServiceClients",
    "ServiceResponseError",
    "SimilarityClient",
    "build_service_clients",
]
