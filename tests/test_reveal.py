import gc
import threading
from datetime import datetime, timezone

from sqlmodel import Session
from logo_hunt import crud, models, game


def test_scenario_acme_two_by_two(engine):
    with Session(engine) as s:
        r1 = crud.reveal_piece(s, "acme", 0, 2)
        assert r1.success and r1.new_piece_index == 0
        assert r1.revealed_pieces == [0] and r1.is_completed is False

        # collision resolves to the lowest hidden piece
        r2 = crud.reveal_piece(s, "acme", 0, 2)
        assert r2.new_piece_index == 1
        assert r2.revealed_pieces == [0, 1]

        r3 = crud.reveal_piece(s, "acme", 2, 2)
        assert r3.revealed_pieces == [0, 1, 2]
        assert crud.get_game_state(s, "acme").end_time is None

        r4 = crud.reveal_piece(s, "acme", 3, 2)
        assert r4.success and r4.is_completed
        assert r4.revealed_pieces == [0, 1, 2, 3]

        state = crud.get_game_state(s, "acme")
        assert state.is_completed
        assert state.start_time is not None and state.end_time is not None


def test_collision_tie_break_on_three_revealed(engine):
    with Session(engine) as s:
        for i in (0, 1, 2):
            crud.reveal_piece(s, "c1", i, 2)
        r = crud.reveal_piece(s, "c1", 0, 2)
        assert r.new_piece_index == 3


def test_completed_puzzle_is_a_noop(engine):
    with Session(engine) as s:
        for i in range(4):
            crud.reveal_piece(s, "done", i, 2)
        before = s.get(models.GameState, "done")
        assert before is not None
        end_time = before.end_time

        r = crud.reveal_piece(s, "done", 1, 2)
        assert r.success is False
        assert r.is_completed is True
        assert r.message == crud.ALL_REVEALED
        assert r.revealed_pieces == [0, 1, 2, 3]
        assert r.to_dict() == {
            "success": False,
            "message": crud.ALL_REVEALED,
            "revealedPieces": [0, 1, 2, 3],
            "isCompleted": True,
        }

        after = crud.get_game_state(s, "done")
        assert after.revealed_pieces == [0, 1, 2, 3]
        assert after.end_time == end_time


def test_repeated_requests_never_duplicate_and_only_grow(engine):
    seen = []
    with Session(engine) as s:
        for _ in range(9):
            r = crud.reveal_piece(s, "rep", 4, 3)
            assert r.success
            assert len(r.revealed_pieces) == len(set(r.revealed_pieces))
            assert set(seen) <= set(r.revealed_pieces)
            seen = r.revealed_pieces
        assert seen == list(range(9))
        assert crud.reveal_piece(s, "rep", 4, 3).success is False


def test_out_of_range_request_stays_in_grid(engine):
    with Session(engine) as s:
        r = crud.reveal_piece(s, "oob", 42, 2)
        assert r.new_piece_index == 0
        r = crud.reveal_piece(s, "oob", -3, 2)
        assert r.new_piece_index == 1


def test_start_time_is_set_once(engine):
    t0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    t1 = datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc)
    with Session(engine) as s:
        crud.reveal_piece(s, "st", 0, 2, now=t0)
        crud.reveal_piece(s, "st", 1, 2, now=t1)
        row = s.get(models.GameState, "st")
        assert row is not None
        assert row.start_time is not None
        assert row.start_time.replace(tzinfo=None) == t0.replace(tzinfo=None)
        assert row.end_time is None


def test_get_game_state_does_not_create_rows(engine):
    with Session(engine) as s:
        view = crud.get_game_state(s, "ghost")
        assert view.to_dict() == {
            "companyId": "ghost",
            "revealedPieces": [],
            "startTime": None,
            "endTime": None,
            "isCompleted": False,
        }
        assert s.get(models.GameState, "ghost") is None


def test_companies_are_independent(engine):
    with Session(engine) as s:
        crud.reveal_piece(s, "a", 0, 2)
        crud.reveal_piece(s, "b", 0, 2)
        crud.reveal_piece(s, "b", 3, 2)
        assert crud.get_game_state(s, "a").revealed_pieces == [0]
        assert crud.get_game_state(s, "b").revealed_pieces == [0, 3]
        assert [v.company_id for v in crud.list_game_states(s)] == ["a", "b"]


def test_concurrent_reveals_same_company(engine):
    results = []
    errors = []

    def worker():
        try:
            with Session(engine) as s:
                results.append(crud.reveal_piece(s, "race", 0, 3))
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    ok = [r for r in results if r.success]
    assert len(ok) == 9
    assert sorted(r.new_piece_index for r in ok) == list(range(9))
    assert sum(1 for r in ok if r.is_completed) == 1
    with Session(engine) as s:
        row = s.get(models.GameState, "race")
        assert row is not None
        assert game.pieces_from_mask(row.revealed_mask) == list(range(9))


def test_reset_game_states(engine):
    with Session(engine) as s:
        crud.reveal_piece(s, "x", 0, 2)
        crud.reset_game_states(s)
        assert crud.list_game_states(s) == []


def test_reveal_with_qr_marks_it_used_in_same_commit(engine):
    with Session(engine) as s:
        r = crud.reveal_piece(s, "qa", 0, 2, qr_id="Q010")
        assert r.success
        assert crud.is_qr_used(s, "Q010")

        replay = crud.reveal_piece(s, "qa", 1, 2, qr_id="Q010")
        assert replay.success is False
        assert replay.message == crud.QR_ALREADY_USED
        assert replay.revealed_pieces == [0]
        assert crud.get_game_state(s, "qa").revealed_pieces == [0]


def test_noop_reveal_does_not_consume_qr(engine):
    with Session(engine) as s:
        for i in range(4):
            crud.reveal_piece(s, "qb", i, 2)
        r = crud.reveal_piece(s, "qb", 0, 2, qr_id="Q011")
        assert r.message == crud.ALL_REVEALED
        assert crud.is_qr_used(s, "Q011") is False


def test_key_locks_are_released_when_unused(engine):
    with Session(engine) as s:
        crud.reveal_piece(s, "gone", 0, 2)
    gc.collect()
    assert "game:gone" not in crud._key_locks

    lock = crud._key_lock("game:held")
    assert crud._key_lock("game:held") is lock
    del lock
    gc.collect()
    assert "game:held" not in crud._key_locks
