from typing import Any, Dict, List, Optional

import httpx


class ValyuClient:
    def __init__(self, api_key: Optional[str], base_url: str = "https://api.valyu.ai/v1", max_results: int = 8):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        # Parallel tool calls in a round share one pool.
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_type: str = "all",
        included_sources: Optional[List[str]] = None,
        max_results: Optional[int] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (access_token or self.enabled):
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_type": search_type,
            "max_num_results": max_results or self.max_results,
        }
        if included_sources:
            payload["included_sources"] = list(included_sources)
        if start_date:
            payload["start_date"] = start_date
        if end_date:
            payload["end_date"] = end_date
        return await self._post(f"{self.base_url}/deepsearch", payload, access_token=access_token)

    async def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if access_token:
            # Signed-in users are billed through their own OAuth token.
            headers["Authorization"] = f"Bearer {access_token}"
        elif self.api_key:
            headers["x-api-key"] = self.api_key
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
