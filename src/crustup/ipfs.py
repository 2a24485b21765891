from __future__ import annotations

import http.client
import json
import logging
import re
import urllib.parse
from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO, Dict, Optional, Tuple

from crustup.crypto.gateway_auth import GatewayAuth
from crustup.errors import StoreUnavailable
from crustup.structured_logging import log_event

Json = Dict[str, object]

log = logging.getLogger("crustup.ipfs")

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bagy...)

_BOUNDARY = "----crustup-ipfs-boundary-5c1e0a7f3b9d4e21"


def is_valid_cid(cid: str, *, max_len: int = 128) -> bool:
    """Cheap CIDv0/CIDv1-base32 shape check, not a multiformats parser."""
    c = (cid or "").strip()
    if not c or len(c) > int(max_len):
        return False
    return bool(_CIDV0_RE.match(c) or _CIDV1_BASE32_RE.match(c))


@dataclass(frozen=True)
class IpfsConfig:
    api_url: str
    timeout_s: float = 600.0


def _send_chunk(conn: http.client.HTTPConnection, data: bytes) -> None:
    if not data:
        return
    conn.send(f"{len(data):X}\r\n".encode("ascii"))
    conn.send(data)
    conn.send(b"\r\n")


def _finish_chunks(conn: http.client.HTTPConnection) -> None:
    conn.send(b"0\r\n\r\n")


def _last_json_object(raw: bytes, *, what: str) -> dict:
    """
    Kubo endpoints answer with one JSON object, /add with NDJSON (one per
    line, progress first). Either way the last object is the result.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise StoreUnavailable(f"ipfs_{what}_failed", "empty_response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if last_obj is None:
        raise StoreUnavailable(f"ipfs_{what}_failed", "bad_response", txt[:200])
    return last_obj


def parse_add_response(raw: bytes) -> Tuple[str, int]:
    obj = _last_json_object(raw, what="add")
    cid = str(obj.get("Hash") or "").strip()
    if not is_valid_cid(cid):
        raise StoreUnavailable("ipfs_add_failed", "invalid_cid", obj)
    try:
        size = int(str(obj.get("Size") or "0").strip())
    except ValueError:
        size = 0
    return cid, size


def parse_stat_response(raw: bytes) -> int:
    obj = _last_json_object(raw, what="stat")
    try:
        return int(obj["CumulativeSize"])
    except (KeyError, TypeError, ValueError) as e:
        raise StoreUnavailable("ipfs_stat_failed", "missing_cumulative_size", obj) from e


class IpfsClient:
    """Minimal IPFS HTTP API client (Kubo or an authenticated web3 gateway).

    add(): /api/v0/add, streamed as chunked multipart.
    stat(): /api/v0/files/stat on /ipfs/<cid>.
    """

    def __init__(self, cfg: IpfsConfig, *, auth: Optional[GatewayAuth] = None) -> None:
        u = urllib.parse.urlparse(cfg.api_url.strip())
        self.cfg = cfg
        self.auth = auth
        self._scheme = (u.scheme or "http").lower()
        self._host = u.hostname or "127.0.0.1"
        self._port = int(u.port or (443 if self._scheme == "https" else 80))

        prefix = (u.path or "").rstrip("/")
        if prefix.endswith("/api/v0"):
            prefix = prefix[: -len("/api/v0")]
        self._prefix = f"{prefix}/api/v0"

    def _connect(self) -> http.client.HTTPConnection:
        timeout = float(self.cfg.timeout_s)
        if self._scheme == "https":
            return http.client.HTTPSConnection(self._host, self._port, timeout=timeout)
        return http.client.HTTPConnection(self._host, self._port, timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        h = {"Host": self._host, "Accept": "application/json"}
        if self.auth is not None:
            h["Authorization"] = self.auth.header_value()
        return h

    def _path(self, endpoint: str, query: Dict[str, str]) -> str:
        qs = urllib.parse.urlencode(query)
        return f"{self._prefix}/{endpoint}?{qs}" if qs else f"{self._prefix}/{endpoint}"

    @staticmethod
    def _check_status(resp: http.client.HTTPResponse, body: bytes, *, what: str) -> None:
        if 200 <= resp.status < 300:
            return
        msg = body.decode("utf-8", errors="replace").strip()
        raise StoreUnavailable(f"ipfs_{what}_failed", f"http_{resp.status}", msg[:300])

    def add_fileobj(self, fileobj: BinaryIO, *, name: str = "upload", pin: bool = True) -> Tuple[str, int]:
        """Stream a file-like object to /api/v0/add. Returns (cid, size)."""
        path = self._path(
            "add",
            {
                "pin": "true" if pin else "false",
                "wrap-with-directory": "false",
                "progress": "false",
            },
        )
        filename = (name or "upload").strip() or "upload"
        preamble = (
            f"--{_BOUNDARY}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
            f"Content-Type: application/octet-stream\r\n"
            f"\r\n"
        ).encode("utf-8")
        epilogue = f"\r\n--{_BOUNDARY}--\r\n".encode("utf-8")

        conn = self._connect()
        reading = False
        try:
            conn.putrequest("POST", path, skip_host=True)
            for k, v in self._headers().items():
                conn.putheader(k, v)
            conn.putheader("Content-Type", f"multipart/form-data; boundary={_BOUNDARY}")
            conn.putheader("Transfer-Encoding", "chunked")
            conn.endheaders()

            _send_chunk(conn, preamble)
            while True:
                reading = True
                block = fileobj.read(1024 * 256)
                reading = False
                if not block:
                    break
                _send_chunk(conn, block)
            _send_chunk(conn, epilogue)
            _finish_chunks(conn)

            resp = conn.getresponse()
            body = resp.read()
        except (OSError, http.client.HTTPException) as e:
            if reading:
                # Local read fault, not a store outage.
                raise
            raise StoreUnavailable("ipfs_add_failed", "transport", str(e)) from e
        finally:
            conn.close()

        self._check_status(resp, body, what="add")
        return parse_add_response(body)

    def add(self, data: bytes, *, name: str = "upload") -> Tuple[str, int]:
        return self.add_fileobj(BytesIO(data), name=name, pin=True)

    def stat(self, cid: str) -> int:
        """Cumulative size (DAG bytes) of /ipfs/<cid>."""
        path = self._path("files/stat", {"arg": f"/ipfs/{cid}"})
        conn = self._connect()
        try:
            conn.putrequest("POST", path, skip_host=True)
            for k, v in self._headers().items():
                conn.putheader(k, v)
            conn.putheader("Content-Length", "0")
            conn.endheaders()
            resp = conn.getresponse()
            body = resp.read()
        except (OSError, http.client.HTTPException) as e:
            raise StoreUnavailable("ipfs_stat_failed", "transport", str(e)) from e
        finally:
            conn.close()

        self._check_status(resp, body, what="stat")
        size = parse_stat_response(body)
        log_event(log, "ipfs_stat", cid=cid, cumulative_size=size)
        return size


def ipfs_client_from_config(api_url: str, *, timeout_s: float, authenticated: bool) -> IpfsClient:
    auth = GatewayAuth() if authenticated else None
    if auth is not None:
        log_event(log, "ipfs_gateway_auth", address=auth.address)
    return IpfsClient(IpfsConfig(api_url=api_url, timeout_s=timeout_s), auth=auth)
