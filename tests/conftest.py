import sys
from pathlib import Path
import pytest
from sqlmodel import SQLModel, create_engine

# Ensure project root is on sys.path so tests can import the `logo_hunt` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from logo_hunt import crud  # noqa: E402
from logo_hunt.cache import get_cache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_process_state():
	# Rate limiter, cache and socket registry are module globals shared by every test
	import logo_hunt.main as app_main
	app_main._RATE_LIMIT_STORE.clear()
	app_main._WS_CONNECTIONS.clear()
	get_cache().clear()
	yield
	app_main._WS_CONNECTIONS.clear()


@pytest.fixture
def engine(tmp_path):
	db = tmp_path / 'game.db'
	eng = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
	SQLModel.metadata.create_all(eng)
	crud.engine = eng
	yield eng
	crud.engine = None
	eng.dispose()
