import os
import tempfile

import pytest


_DB_DIR = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DB_URL"] = os.getenv("TEST_DB_URL") or f"sqlite:///{os.path.join(_DB_DIR, 'dispatch.db')}"
os.environ["ENV"] = "dev"
os.environ["JWT_SECRET"] = "dispatch-test-secret-0123456789abcdef"
os.environ["MAPS_MAX_RETRIES"] = "0"


from captain_dispatch.database import engine  # noqa: E402
from captain_dispatch.maps import set_maps_provider  # noqa: E402
from captain_dispatch.models import Base  # noqa: E402

from .utils import FakeMaps  # noqa: E402


@pytest.fixture(autouse=True)
def maps():
    fake = FakeMaps()
    set_maps_provider(fake)
    yield fake
    set_maps_provider(None)


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.create_all(bind=engine)
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
