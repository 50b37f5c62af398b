import io
import os
import zipfile

import pytest
from fastapi.testclient import TestClient

# Sätt miljön innan app importeras så testerna inte kräver API-nyckel,
# ClamAV eller JSON-loggning
os.environ.setdefault("AUTH_MODE", "off")
os.environ.setdefault("SCANNER_MODE", "mock")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "plain")

from craftcfg.main import app, upload_rate_limiter

EICAR = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01" + b"\x00" * 64
YAML_BYTES = b"server:\n  port: 25565\n  motd: Welcome to the server\n"


def make_zip(entries: dict[str, str] | None = None) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, text in (entries or {"server.properties": "motd=hello\nmax-players=20\n"}).items():
            zf.writestr(name, text)
    return buf.getvalue()


class FakeCursor:
    def __init__(self, items):
        self.items = items

    def sort(self, *_args, **_kwargs):
        return self

    def limit(self, n):
        self.items = self.items[:n]
        return self

    def __aiter__(self):
        self._iter = iter(self.items)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeUploads:
    def __init__(self):
        self.items = []

    async def insert_one(self, doc):
        self.items.append(doc)
        return object()

    def find(self, query, _projection=None):
        matched = [
            item for item in reversed(self.items)
            if all(item.get(key) == value for key, value in query.items())
        ]
        return FakeCursor(matched)


class FakeDB:
    def __init__(self):
        self.uploads = FakeUploads()


async def _noop():
    return None


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def upload_root(tmp_path, monkeypatch):
    monkeypatch.setattr("craftcfg.storage.UPLOAD_ROOT", tmp_path)
    return tmp_path


@pytest.fixture
def client(fake_db, upload_root, monkeypatch):
    upload_rate_limiter.clear()
    monkeypatch.setattr("craftcfg.main.get_db", lambda: fake_db)
    monkeypatch.setattr("craftcfg.main.ensure_upload_indexes", _noop)
    monkeypatch.setattr("craftcfg.main.setup_logging", lambda: None)
    with TestClient(app) as test_client:
        yield test_client
    upload_rate_limiter.clear()


@pytest.fixture
def authed_client(client, monkeypatch):
    """Klient med API-nyckelautentisering aktiverad."""
    monkeypatch.setattr("craftcfg.auth.AUTH_MODE", "apikey")
    monkeypatch.setattr("craftcfg.auth._API_KEY_MAP", {"test-secret-key": "testuser"})
    return client


def stored_files(root):
    directory = root / "configs"
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir())
