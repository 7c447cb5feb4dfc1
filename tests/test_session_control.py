from sqlmodel import Session
from logo_hunt import crud


def _seed(s):
    crud.mark_qr_used(s, "Q001")
    crud.reveal_piece(s, "acme", 0, 2)
    crud.record_completion(s, "acme", "Acme", "x")
    crud.add_answer(s, "Q001", "Question?", "Answer", "acme", "Acme", 0)


def test_initial_state_is_stopped(engine):
    with Session(engine) as s:
        cfg = crud.get_session_config(s)
        assert cfg.game_started is False
        assert cfg.game_start_time is None


def test_start_stop_cycle(engine):
    with Session(engine) as s:
        cfg = crud.start_game(s, now_ms=1_000)
        assert cfg == crud.SessionConfig(game_started=True, game_start_time=1_000)
        assert crud.get_session_config(s) == cfg

        stopped = crud.stop_game(s)
        assert stopped.game_started is False
        # stopping keeps the baseline
        assert stopped.game_start_time == 1_000


def test_restart_restamps_start_time(engine):
    with Session(engine) as s:
        crud.start_game(s, now_ms=1_000)
        crud.start_game(s, now_ms=5_000)
        assert crud.get_session_config(s).game_start_time == 5_000


def test_reset_clears_data_but_keeps_flag(engine):
    with Session(engine) as s:
        crud.start_game(s, now_ms=1_000)
        _seed(s)

        crud.reset_game(s)

        assert crud.list_used_qr(s) == []
        assert crud.list_game_states(s) == []
        assert crud.get_leaderboard(s) == []
        assert crud.get_answer_history(s) == []
        assert crud.get_session_config(s).game_started is True


def test_reset_while_stopped_keeps_stopped(engine):
    with Session(engine) as s:
        _seed(s)
        crud.reset_game(s)
        assert crud.get_session_config(s).game_started is False


def test_reset_all_keeps_answer_history(engine):
    with Session(engine) as s:
        _seed(s)
        crud.reset_all(s)
        assert crud.count_used_qr(s) == 0
        assert crud.list_game_states(s) == []
        assert crud.get_leaderboard(s) == []
        assert len(crud.get_answer_history(s)) == 1


def test_garbage_start_time_is_ignored(engine):
    from logo_hunt import models
    with Session(engine) as s:
        s.add(models.ConfigEntry(key=crud.GAME_START_TIME_KEY, value="not-a-number"))
        s.commit()
        assert crud.get_session_config(s).game_start_time is None
