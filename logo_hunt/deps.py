from sqlmodel import Session
from . import crud


def get_session():
    # one session per request, bound to the engine configured at startup
    with Session(crud.engine) as session:
        yield session
