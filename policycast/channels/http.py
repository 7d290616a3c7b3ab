"""Small JSON-over-HTTP POST helper shared by the webhook and SMS adapters.

Status codes are mapped onto the adapter error taxonomy:
  - 2xx               success
  - 408, 425, 429, 5xx  AdapterTransientError
  - other 4xx         AdapterPermanentError
  - connection errors and timeouts  AdapterTransientError
"""

from __future__ import annotations

import json
import socket
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..errors import AdapterPermanentError, AdapterTransientError

_RETRYABLE_STATUS = frozenset({408, 425, 429})


def post_json(
    url: str,
    body: bytes,
    *,
    headers: Mapping[str, str] | None = None,
    timeout_s: float = 10.0,
) -> int:
    """POST an already-encoded JSON body and return the HTTP status."""
    req = Request(
        url,
        data=body,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
            **dict(headers or {}),
        },
    )
    try:
        with urlopen(req, timeout=timeout_s) as resp:
            resp.read()
            return resp.status
    except HTTPError as e:
        if e.code in _RETRYABLE_STATUS or e.code >= 500:
            raise AdapterTransientError(f"HTTP {e.code} from {url}: {e.reason}") from e
        raise AdapterPermanentError(f"HTTP {e.code} from {url}: {e.reason}") from e
    except URLError as e:
        raise AdapterTransientError(f"connection error for {url}: {e.reason}") from e
    except (socket.timeout, TimeoutError) as e:
        raise AdapterTransientError(f"timeout after {timeout_s}s for {url}") from e
    except OSError as e:
        raise AdapterTransientError(f"network error for {url}: {e}") from e


def encode_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
