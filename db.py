from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
import threading
import os

DB_FILE = os.path.join(os.path.dirname(__file__), "travelmatch.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

# SQLite needs check_same_thread=False and a generous busy timeout for
# concurrent writers; Postgres needs neither
_connect_args = {"check_same_thread": False, "timeout": 30} if DATABASE_URL.startswith("sqlite") else {}

# Application-level locks keyed by a simple name (e.g., expiry-sweep)
locks = {}
locks_lock = threading.Lock()


def get_lock(name: str):
    with locks_lock:
        if name not in locks:
            locks[name] = threading.Lock()
        return locks[name]


engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db():
    # register table metadata before create_all
    import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine)
