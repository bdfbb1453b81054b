# backend/sitelapse/db.py
import os

from sqlmodel import SQLModel, create_engine


def make_engine(database_url: str):
    if database_url.startswith("sqlite:///"):
        db_path = database_url[len("sqlite:///"):]
        if db_path and db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        # file-based sqlite shared by the request threads and the scheduler worker
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=False)


def init_db(engine):
    SQLModel.metadata.create_all(engine)
