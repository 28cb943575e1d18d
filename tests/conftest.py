import base64
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

_DB_DIR = tempfile.mkdtemp(prefix="pageforge-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/pageforge.db"
os.environ["GITHUB_TOKEN"] = ""
os.environ["PUBLIC_BASE_URL"] = ""
os.environ["DESIGN_GENERATE_HERO_IMAGE"] = "false"

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from pageforge.db.base import SessionLocal, engine  # noqa: E402
from pageforge.db.models import COLLECTION_MODELS  # noqa: E402
from pageforge.deps import get_image_generator, get_llm_client  # noqa: E402
from pageforge.errors import CollaboratorError  # noqa: E402
from pageforge.llm.client import LLMResult  # noqa: E402
from pageforge.llm.images import GeneratedImage, ImageRefusal  # noqa: E402
from pageforge.main import app  # noqa: E402
from pageforge.storage import FileStore, RelationalStore, get_store  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def apply_migrations() -> None:
    alembic_cfg = Config(str(ROOT_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    command.upgrade(alembic_cfg, "head")


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as connection:
        for model in COLLECTION_MODELS.values():
            connection.execute(delete(model))


@pytest.fixture()
def store() -> RelationalStore:
    return RelationalStore(SessionLocal)


class FakeLLM:
    """Replays scripted results in order; an Exception entry is raised instead."""

    def __init__(self) -> None:
        self.responses: list[Any] = []
        self.calls: list[dict[str, Any]] = []

    def queue(self, *items: Any, tokens: int = 100) -> None:
        for item in items:
            if isinstance(item, (dict, list)):
                item = json.dumps(item)
            if isinstance(item, str):
                item = LLMResult(text=item, tokens_used=tokens, model="fake-model")
            self.responses.append(item)

    def _next(self, kind: str, prompt: str, params: Any) -> LLMResult:
        self.calls.append({"kind": kind, "prompt": prompt, "params": params})
        if not self.responses:
            raise CollaboratorError("No scripted response left", service="llm")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def generate(self, prompt: str, params: Any = None) -> LLMResult:
        return self._next("generate", prompt, params)

    def search(self, prompt: str, params: Any = None) -> LLMResult:
        return self._next("search", prompt, params)


class FakeImages:
    def __init__(self, outcome: Any = None) -> None:
        self.outcome = outcome or GeneratedImage(data=b"\x89PNG fake", mime_type="image/png", width=16, height=9)
        self.prompts: list[str] = []

    def generate(self, *, prompt: str, aspect_ratio: Optional[str] = None):
        self.prompts.append(prompt)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def fake_images() -> FakeImages:
    return FakeImages()


@pytest.fixture()
def refusing_images() -> FakeImages:
    return FakeImages(ImageRefusal(reason="SAFETY"))


@pytest.fixture()
def override_dependencies(store, fake_llm, fake_images):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_llm_client] = lambda: fake_llm
    app.dependency_overrides[get_image_generator] = lambda: fake_images
    try:
        yield
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def api_client(override_dependencies):
    with TestClient(app) as client:
        yield client


class FakeGitHubContents:
    """In-memory GitHub contents API: GET returns {content, sha}; PUT enforces the blob sha."""

    def __init__(self) -> None:
        self.files: dict[str, tuple[str, str]] = {}
        self.puts = 0
        self.conflicts = 0
        self._counter = 0
        # Paths served like files over 1 MB: no inline content, raw media type required.
        self.large: set[str] = set()
        self.raw_status = 200

    def _sha(self) -> str:
        self._counter += 1
        return f"sha{self._counter}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET":
            if path not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            content, sha = self.files[path]
            decoded = base64.b64decode(content)
            if request.headers.get("accept") == "application/vnd.github.raw":
                if self.raw_status != 200:
                    return httpx.Response(self.raw_status, json={"message": "unavailable"})
                return httpx.Response(200, content=decoded)
            if path in self.large:
                return httpx.Response(200, json={"content": "", "encoding": "none", "size": len(decoded), "sha": sha})
            return httpx.Response(
                200, json={"content": content, "encoding": "base64", "size": len(decoded), "sha": sha}
            )
        if request.method == "PUT":
            self.puts += 1
            body = json.loads(request.content)
            current = self.files.get(path)
            if current is not None and body.get("sha") != current[1]:
                self.conflicts += 1
                return httpx.Response(409, json={"message": "sha mismatch"})
            if current is None and body.get("sha"):
                return httpx.Response(422, json={"message": "sha given for new file"})
            sha = self._sha()
            self.files[path] = (body["content"], sha)
            return httpx.Response(201, json={"content": {"sha": sha}})
        return httpx.Response(405)

    def seed(self, path: str, data: Any) -> None:
        encoded = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")
        self.files[path] = (encoded, self._sha())

    def read(self, path: str) -> Any:
        content, _ = self.files[path]
        return json.loads(base64.b64decode(content))


@pytest.fixture()
def github() -> FakeGitHubContents:
    return FakeGitHubContents()


@pytest.fixture()
def file_store(github) -> FileStore:
    return FileStore(
        token="test-token",
        owner="acme",
        repo="pages-data",
        base_url="https://api.github.test",
        transport=httpx.MockTransport(github.handler),
    )
