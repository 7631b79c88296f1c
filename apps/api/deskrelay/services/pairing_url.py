"""Encode and decode the URL a scanner phone opens to pair with a desk."""
from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

SCANNER_PAGE = "/mobile-scanner"


class PairingUrlError(ValueError):
    """Raised when a scanned payload is not a usable pairing URL."""


@dataclass(frozen=True, slots=True)
class PairingPayload:
    desk_id: str
    signature: str
    endpoint: str


def build_scanner_url(base_url: str, payload: PairingPayload) -> str:
    query = urlencode(
        {"deskId": payload.desk_id, "signature": payload.signature, "endpoint": payload.endpoint}
    )
    return f"{base_url.rstrip('/')}{SCANNER_PAGE}?{query}"


def parse_scanner_url(url: str) -> PairingPayload:
    parts = urlsplit(url.strip())
    params = parse_qs(parts.query)

    def _required(name: str) -> str:
        values = params.get(name)
        if not values or not values[0]:
            raise PairingUrlError(f"Pairing URL is missing '{name}'")
        return values[0]

    endpoint = _required("endpoint")
    if urlsplit(endpoint).scheme not in {"ws", "wss"}:
        raise PairingUrlError("Pairing endpoint must be a ws:// or wss:// URL")
    return PairingPayload(desk_id=_required("deskId"), signature=_required("signature"), endpoint=endpoint)
