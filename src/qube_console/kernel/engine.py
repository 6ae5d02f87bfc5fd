"""Client for the container engine's REST API (default http://127.0.0.1:3030)."""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..contracts.v1 import ContainerInfo, ContainerList, EngineListing
from ..errors import ConsoleError
from .settings import DEFAULT_ENGINE_API, EngineSettings


logger = logging.getLogger("qube_console.engine")


class EngineError(ConsoleError):
    code = "engine_unavailable"


class EngineClient:
    def __init__(self, *, api_base: str = DEFAULT_ENGINE_API, timeout_s: float = 5.0) -> None:
        self.api_base = str(api_base or DEFAULT_ENGINE_API).rstrip("/")
        self.timeout_s = float(timeout_s)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "EngineClient":
        return cls(api_base=settings.api_base)

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_base}{path}"
        data = None
        headers = {"Accept": "application/json"}
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = ""
            try:
                detail = e.read().decode("utf-8", errors="replace")
            except Exception:
                pass
            raise EngineError(f"{method} {path}: HTTP {e.code} {detail}".strip(), details={"status": e.code}) from e
        except (urllib.error.URLError, OSError) as e:
            logger.debug("engine request failed: %s %s: %s", method, url, e)
            raise EngineError(f"engine unreachable at {self.api_base}: {e}") from e
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            # /start and /stop answer with plain text.
            return {"message": raw.strip()}

    def list_containers(self) -> List[ContainerInfo]:
        doc = self._request("GET", "/list")
        if isinstance(doc, list):
            doc = {"containers": doc}
        if not isinstance(doc, dict):
            return []
        return ContainerList.model_validate(doc).containers

    def start(self, name: str) -> Dict[str, Any]:
        out = self._request("POST", f"/start/{quote(str(name), safe='')}")
        return out if isinstance(out, dict) else {"result": out}

    def stop(self, name: str) -> Dict[str, Any]:
        out = self._request("POST", f"/stop/{quote(str(name), safe='')}")
        return out if isinstance(out, dict) else {"result": out}

    def images(self) -> EngineListing:
        return _listing(self._request("GET", "/images"), key="images")

    def volumes(self) -> EngineListing:
        return _listing(self._request("GET", "/volumes"), key="volumes")


def _listing(doc: Any, *, key: str) -> EngineListing:
    if isinstance(doc, list):
        return EngineListing(items=doc)
    if isinstance(doc, dict):
        items = doc.get(key)
        if isinstance(items, list):
            return EngineListing(items=items)
    return EngineListing(items=[])
