import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Tests live at <repo>/tests/, so the repo root is one parent above.
REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def write_artwork(
    root: Path,
    external_id: str,
    *,
    user: str = "Alice",
    user_id: str | None = "1",
    title: str = "T",
    tags: str | None = "a b",
    pages: int = 2,
    folder: str | None = None,
    extra: str = "",
) -> Path:
    """Create `<root>/<folder>/<id>-meta.txt` plus `pages` images; returns the folder."""
    if folder is None:
        folder = f"{user} ({user_id})" if user_id else user
    directory = root / folder / external_id
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["ID", external_id, "", "User", user, ""]
    if user_id is not None:
        lines += ["UserID", user_id, ""]
    lines += ["Title", title, ""]
    if tags is not None:
        lines += ["Tags", tags, ""]
    text = "\n".join(lines) + extra
    (directory / f"{external_id}-meta.txt").write_text(text, encoding="utf-8")
    for page in range(pages):
        (directory / f"{external_id}_p{page}.jpg").write_bytes(b"\xff\xd8\xff" + bytes(16))
    return directory


@pytest.fixture
def make_artwork():
    return write_artwork


@pytest_asyncio.fixture
async def db(tmp_path):
    from pixishelf_backend.adapters.db.schema import migrate_schema
    from pixishelf_backend.adapters.db.sqlite import Sqlite

    database = Sqlite(str(tmp_path / "library.db"))
    res = await migrate_schema(database)
    assert res.ok, res.error
    try:
        yield database
    finally:
        await database.aclose()


@pytest_asyncio.fixture
async def store(db):
    from pixishelf_backend.features.ingest.store import LibraryStore

    return LibraryStore(db)


@pytest_asyncio.fixture
async def services(tmp_path):
    from pixishelf_backend.deps import build_services, dispose_services

    svc_res = await build_services(str(tmp_path / "services.db"), default_scan_path="")
    assert svc_res.ok, svc_res.error
    svc = svc_res.data
    try:
        yield svc
    finally:
        await dispose_services(svc)
