from dataclasses import dataclass, field
from pathlib import Path
import asyncio
import logging
import os
import socket
import struct

from craftcfg.errors import ScannerUnavailableError

logger = logging.getLogger("craftcfg.scanner")

EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"
EICAR_SIGNATURE = "Eicar-Test-Signature"
DEFAULT_TIMEOUT_SECONDS = 30.0
CHUNK_SIZE = 64 * 1024


@dataclass
class ScanVerdict:
    infected: bool
    engine: str
    signatures: list[str] = field(default_factory=list)
    detail: str = ""
    # set when ClamAV could not be reached and no real engine ran
    scanner_unavailable: bool = False


def _scan_mock(path: Path) -> ScanVerdict:
    content = path.read_bytes()
    if EICAR_MARKER in content:
        return ScanVerdict(
            infected=True,
            engine="mock",
            signatures=[EICAR_SIGNATURE],
            detail="EICAR test signature detected",
        )
    return ScanVerdict(infected=False, engine="mock", detail="No signature matched")


def _scan_clamav(path: Path) -> ScanVerdict:
    host = os.getenv("CLAMAV_HOST", "clamav")
    port = int(os.getenv("CLAMAV_PORT", "3310"))
    timeout = float(os.getenv("CLAMAV_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock, path.open("rb") as fh:
            sock.sendall(b"zINSTREAM\0")
            # Each chunk carries a 4-byte big-endian size prefix; a zero size ends the stream.
            while chunk := fh.read(CHUNK_SIZE):
                sock.sendall(struct.pack(">I", len(chunk)))
                sock.sendall(chunk)
            sock.sendall(struct.pack(">I", 0))
            response = sock.recv(4096).decode("utf-8", errors="replace").strip("\0").strip()
    except OSError as exc:
        logger.warning("ClamAV connection failed (host=%s port=%s): %s", host, port, exc)
        raise ScannerUnavailableError("ClamAV unavailable") from exc

    if response.endswith("FOUND"):
        signature = response[: -len("FOUND")].split(":", 1)[-1].strip()
        return ScanVerdict(
            infected=True,
            engine="clamav",
            signatures=[signature] if signature else [],
            detail=f"Signature detected: {signature}",
        )
    if response.endswith("OK"):
        return ScanVerdict(infected=False, engine="clamav", detail="No signature matched")
    if "ERROR" in response:
        logger.warning("ClamAV returned an error for %s: %s", path.name, response)
        raise ScannerUnavailableError(response)
    raise ScannerUnavailableError(f"Unexpected response: {response}")


def scan_path(path: Path) -> ScanVerdict:
    """
    Scan mode:
    - mock: EICAR marker heuristics only
    - clamav: require ClamAV, raise ScannerUnavailableError on scanner failure
    - auto (default): try ClamAV, fallback to mock if unavailable; the verdict
      is then flagged scanner_unavailable so the error policy still applies
    """
    mode = os.getenv("SCANNER_MODE", "auto").strip().lower()
    if mode == "mock":
        return _scan_mock(path)
    if mode == "clamav":
        return _scan_clamav(path)

    # auto mode
    try:
        return _scan_clamav(path)
    except ScannerUnavailableError as exc:
        verdict = _scan_mock(path)
        verdict.detail = f"{verdict.detail} (fallback: {exc})"
        verdict.scanner_unavailable = True
        return verdict


async def scan_file(path: Path) -> ScanVerdict:
    return await asyncio.to_thread(scan_path, path)
