from typing import Any, Dict, Optional, Union

from labdesk.api.v1.lab.schemas import QueueResponse
from labdesk.client.gateway import LabGateway
from labdesk.domain.lab.queues import QueueBucket, QueueFilters


async def fetch_queue(
    gateway: LabGateway,
    bucket: Union[QueueBucket, str],
    filters: Optional[Union[QueueFilters, Dict[str, Any]]] = None
) -> QueueResponse:
    """One page of a bucket, always read fresh from the backend"""
    bucket = QueueBucket(bucket)
    if filters is None:
        filters = QueueFilters()
    elif isinstance(filters, dict):
        filters = QueueFilters(**filters)

    params = filters.model_dump(mode="json", exclude_defaults=True)
    params["page"] = filters.page
    params["per_page"] = filters.per_page
    payload = await gateway.get_queue(bucket.value, params)
    return QueueResponse.model_validate(payload)
