from typing import Any, Dict, Optional

import httpx


class SandboxClient:
    """Runs Python snippets on a remote sandbox service (`POST {url}/execute`)."""

    def __init__(self, api_url: Optional[str], api_key: Optional[str] = None, timeout: float = 120.0):
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def execute(self, code: str, language: str = "python") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "sandbox_not_configured"}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(
                f"{self.api_url}/execute",
                json={"code": code, "language": language},
                headers=headers,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": e.response.text}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except ValueError:
            return {"error": "invalid_response"}
        if not isinstance(data, dict):
            return {"error": "invalid_response"}
        return {
            "stdout": data.get("stdout") or data.get("result") or "",
            "stderr": data.get("stderr") or "",
            "exit_code": data.get("exit_code", data.get("exitCode", 0)),
        }

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
