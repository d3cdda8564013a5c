import os
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path
import shutil

sys.path.append(str(Path(__file__).resolve().parents[2]))

from droproom.main import app
from droproom.database import Base, enable_sqlite_foreign_keys, get_db
from droproom.errors import StorageFailure
from droproom.storage import LocalBlobStore, get_blob_store

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    os.environ["UPLOAD_DIR"] = str(d)
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def blob_store(upload_dir):
    return LocalBlobStore(str(upload_dir))


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(blob_store):
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_blob_store, None)


class FailingBlobStore(LocalBlobStore):
    """Local store whose writes and/or deletes fail on demand."""

    def __init__(self, root, *, fail_put=False, fail_delete_prefix=None):
        super().__init__(root)
        self.fail_put = fail_put
        self.fail_delete_prefix = fail_delete_prefix

    def put(self, key, data, mime_type="application/octet-stream"):
        if self.fail_put:
            raise StorageFailure(f"simulated write failure for {key}")
        super().put(key, data, mime_type)

    def delete(self, key):
        if self.fail_delete_prefix and key.startswith(self.fail_delete_prefix):
            raise StorageFailure(f"simulated delete failure for {key}")
        super().delete(key)
