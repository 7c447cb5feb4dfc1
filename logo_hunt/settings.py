import json
import os
from typing import List

# grid sizes the printed puzzles come in
ALLOWED_GRID_SIZES = (2, 3, 4)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./game.db")

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5173")

_DEFAULT_ORIGINS = [
    "http://localhost:5173",      # Vite dev server
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

_DEFAULT_COMPANIES = [
    {"id": "company1", "name": "Company A", "logo": "/logos/company1.svg"},
    {"id": "company2", "name": "Company B", "logo": "/logos/company2.svg"},
    {"id": "company3", "name": "Company C", "logo": "/logos/company3.svg"},
]


def grid_size() -> int:
    """Configured puzzle grid size; falls back to 3 when unset or invalid."""
    raw = os.getenv("GRID_SIZE", "3")
    try:
        size = int(raw)
    except ValueError:
        return 3
    return size if size in ALLOWED_GRID_SIZES else 3


def allowed_origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or list(_DEFAULT_ORIGINS)


def companies() -> List[dict]:
    raw = os.getenv("COMPANIES")
    if not raw:
        return [dict(c) for c in _DEFAULT_COMPANIES]
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("COMPANIES must be a JSON list")
    return data


def engine_kwargs(url: str) -> dict:
    """Keyword args for create_engine; pooled settings only for server databases."""
    if url.startswith("sqlite"):
        return {"echo": False, "connect_args": {"check_same_thread": False}}
    return {
        "echo": False,
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,
    }
