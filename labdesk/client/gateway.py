"""
Lab Backend Gateway

Transport used by the result-entry client. Every failure comes back as one
of the exceptions in labdesk.core.exceptions: HTTP error bodies are mapped
by status code, timeouts and disconnects become TransportError.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from labdesk.core.config import settings
from labdesk.core.exceptions import exception_from_response, handle_transport_error


class LabGateway(Protocol):
    """Operations the client needs from the lab backend"""

    async def get_result_entry(self, lab_request_id: int) -> Dict[str, Any]:
        ...

    async def save_result_field(self, lab_request_id: int, child_test_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def submit_results(
        self,
        lab_request_id: int,
        rows: List[Dict[str, Any]],
        main_test_comment: Optional[str] = None,
        send_comment: bool = False,
        authorize: bool = False
    ) -> Dict[str, Any]:
        ...

    async def authorize(self, lab_request_id: int, child_test_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        ...

    async def unauthorize(self, lab_request_id: int, child_test_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        ...

    async def reset_to_default(self, lab_request_id: int) -> Dict[str, Any]:
        ...

    async def mark_sample_collected(self, lab_request_id: int) -> Dict[str, Any]:
        ...

    async def mark_visit_samples_collected(self, visit_id: int) -> Dict[str, Any]:
        ...

    async def get_queue(self, bucket: str, params: Dict[str, Any]) -> Dict[str, Any]:
        ...


class HttpLabGateway:
    """LabGateway over the backend's JSON API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        user_id: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        headers = {"X-User-Id": str(user_id)} if user_id is not None else {}
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url or settings.LAB_API_BASE_URL,
                timeout=timeout if timeout is not None else settings.LAB_API_TIMEOUT_SECONDS,
                headers=headers,
            )
            self._owns_client = True
        else:
            client.headers.update(headers)
            self._owns_client = False
        self._client = client

    async def __aenter__(self) -> "HttpLabGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            # Covers timeouts, refused connections and dropped sockets
            raise handle_transport_error(e, operation) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": response.text or None}
            error = exception_from_response(response.status_code, payload)
            logger.warning(f"{operation} failed with {response.status_code}: {error.message}")
            raise error

        return response.json()

    async def get_result_entry(self, lab_request_id: int) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/labrequests/{lab_request_id}/for-result-entry", "get_result_entry"
        )

    async def save_result_field(self, lab_request_id: int, child_test_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "PATCH",
            f"/labrequests/{lab_request_id}/results/{child_test_id}",
            "save_result_field",
            json=changes,
        )

    async def submit_results(
        self,
        lab_request_id: int,
        rows: List[Dict[str, Any]],
        main_test_comment: Optional[str] = None,
        send_comment: bool = False,
        authorize: bool = False
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"results": rows, "authorize": authorize}
        if send_comment:
            body["main_test_comment"] = main_test_comment
        return await self._request(
            "POST", f"/labrequests/{lab_request_id}/results", "submit_results", json=body
        )

    async def authorize(self, lab_request_id: int, child_test_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/labrequests/{lab_request_id}/authorize",
            "authorize",
            json={"child_test_ids": child_test_ids},
        )

    async def unauthorize(self, lab_request_id: int, child_test_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/labrequests/{lab_request_id}/unauthorize",
            "unauthorize",
            json={"child_test_ids": child_test_ids},
        )

    async def reset_to_default(self, lab_request_id: int) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/labrequests/{lab_request_id}/reset-to-default", "reset_to_default"
        )

    async def mark_sample_collected(self, lab_request_id: int) -> Dict[str, Any]:
        return await self._request(
            "PATCH", f"/labrequests/{lab_request_id}/mark-sample-collected", "mark_sample_collected"
        )

    async def mark_visit_samples_collected(self, visit_id: int) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/visits/{visit_id}/samples/mark-collected", "mark_visit_samples_collected"
        )

    async def get_queue(self, bucket: str, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {k: v for k, v in params.items() if v is not None}
        return await self._request("GET", f"/lab/queues/{bucket}", "get_queue", params=query)
