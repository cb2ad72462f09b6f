from __future__ import annotations

from itertools import combinations

import pytest

from arachnid_runner.missions import (
    MissionBoard,
    MissionStateError,
    MissionStatus,
    SubmitStage,
    agent_rank,
    success_meta,
)


FEEL = " ".join(["smooth"] * 25)


def _progress(**statuses: str) -> dict:
    missions = {mission_id: {"status": "NOT_STARTED"} for mission_id in ("m1", "m2", "m3")}
    for mission_id, status in statuses.items():
        missions[mission_id] = {"status": status}
    return {"missions": missions}


def _fill_m2(board: MissionBoard) -> None:
    board.update_field("m2", "flight", "Held the line past the basket.")
    board.update_field("m2", "videoUrl", "https://video.example/flight")
    board.update_field("m2", "shirtSize", "XL")
    board.update_field("m2", "confirmDistance200", True)
    board.update_field("m2", "confirmRights", True)


def test_rank_depends_only_on_locked_count() -> None:
    expected = ["Candidate", "Qualified", "Operator", "Tier One"]
    for count in range(4):
        for locked in combinations(("m1", "m2", "m3"), count):
            missions = {mission_id: {"status": "LOCKED" if mission_id in locked else "NOT_STARTED"} for mission_id in ("m1", "m2", "m3")}
            assert agent_rank(missions) == expected[count]


def test_success_meta_labels() -> None:
    assert success_meta("m1").rank == "FIELD TESTER"
    assert success_meta("m2").rank == "OPERATIVE"
    assert success_meta("m3").mission_number == 3
    assert success_meta("m3").rank == "SHARPSHOOTER"


def test_statuses_derive_from_field_content() -> None:
    board = MissionBoard(token="agent-007")
    assert board.status["m1"] is MissionStatus.NOT_STARTED
    board.update_field("m1", "feel", "too few words")
    assert board.status["m1"] is MissionStatus.IN_PROGRESS
    board.update_field("m1", "feel", FEEL)
    assert board.status["m1"] is MissionStatus.READY


def test_m2_not_ready_until_m1_stored_locked() -> None:
    board = MissionBoard(token="agent-007")
    _fill_m2(board)
    assert board.status["m2"] is MissionStatus.IN_PROGRESS
    board.reconcile(_progress(m1="LOCKED"))
    assert board.status["m2"] is MissionStatus.READY


def test_submit_lifecycle_locks_mission() -> None:
    board = MissionBoard(token="agent-007", handle="@spinner")
    board.update_field("m1", "feel", FEEL)

    payload = board.begin_submit("m1")
    assert payload is not None
    assert payload["missionMeta"] == {"missionId": "m1"}
    assert payload["mission"]["feel"] == FEEL
    assert payload["codename"] == "@spinner"
    assert board.status["m1"] is MissionStatus.SENDING
    assert board.stages["m1"] is SubmitStage.ENCRYPTING

    with pytest.raises(MissionStateError):
        board.update_field("m1", "feel", "changed")

    board.advance_stage("m1")
    assert board.stages["m1"] is SubmitStage.UPLOADING

    board.complete_submit("m1", _progress(m1="LOCKED"))
    assert board.status["m1"] is MissionStatus.LOCKED
    assert board.stages["m1"] is SubmitStage.SENT
    assert board.rank == "Qualified"


def test_invalid_submit_sets_error_until_edited() -> None:
    board = MissionBoard(token="agent-007")
    board.update_field("m1", "feel", "short")
    assert board.begin_submit("m1") is None
    assert board.status["m1"] is MissionStatus.ERROR
    assert board.errors["m1"] == "Mission 1 notes must be at least 25 words (max 2000 characters)."

    board.recompute()
    assert board.status["m1"] is MissionStatus.ERROR

    board.update_field("m1", "feel", FEEL)
    assert board.status["m1"] is MissionStatus.READY
    assert board.errors["m1"] == ""


def test_submit_requires_token() -> None:
    board = MissionBoard()
    board.update_field("m1", "feel", FEEL)
    assert board.token_missing is True
    assert board.can_submit("m1") is False
    with pytest.raises(MissionStateError):
        board.begin_submit("m1")


def test_fail_submit_keeps_error_message() -> None:
    board = MissionBoard(token="agent-007")
    board.update_field("m1", "feel", FEEL)
    board.begin_submit("m1")
    board.fail_submit("m1")
    assert board.status["m1"] is MissionStatus.ERROR
    assert board.stages["m1"] is SubmitStage.IDLE
    assert board.errors["m1"] == "Transmission failed"


def test_reconcile_forces_server_lock_and_hydrates_fields() -> None:
    board = MissionBoard(token="agent-007")
    progress = _progress(m1="LOCKED")
    progress["missions"]["m1"]["data"] = {"feel": FEEL, "feelRating": 5, "feelNote": "nice"}
    board.reconcile(progress)
    assert board.status["m1"] is MissionStatus.LOCKED
    assert board.fields["m1"]["feel"] == FEEL
    assert board.fields["m1"]["feelRating"] == 5


def test_reconcile_does_not_overwrite_touched_fields() -> None:
    board = MissionBoard(token="agent-007")
    board.update_field("m1", "feel", "draft in progress")
    progress = _progress()
    progress["missions"]["m1"]["data"] = {"feel": "server copy"}
    board.reconcile(progress)
    assert board.fields["m1"]["feel"] == "draft in progress"


def test_edit_session_survives_reconcile() -> None:
    board = MissionBoard(token="agent-007")
    board.update_field("m1", "feel", FEEL)
    board.begin_submit("m1")
    board.complete_submit("m1", _progress(m1="LOCKED"))

    board.edit("m1")
    assert board.status["m1"] is MissionStatus.IN_PROGRESS
    board.reconcile(_progress(m1="LOCKED"))
    assert board.status["m1"] is not MissionStatus.LOCKED

    board.update_field("m1", "feel", FEEL + " again")
    assert board.status["m1"] is MissionStatus.READY


def test_server_not_started_demotes_client_lock() -> None:
    board = MissionBoard(token="agent-007")
    board.status["m1"] = MissionStatus.LOCKED
    board.reconcile(_progress())
    assert board.status["m1"] is MissionStatus.NOT_STARTED


def test_edit_requires_locked_mission() -> None:
    board = MissionBoard(token="agent-007")
    with pytest.raises(MissionStateError):
        board.edit("m1")


def test_locked_mission_needs_edit_before_resubmitting() -> None:
    board = MissionBoard(token="agent-007")
    board.update_field("m1", "feel", FEEL)
    board.begin_submit("m1")
    board.complete_submit("m1", _progress(m1="LOCKED"))
    assert board.is_disabled("m1") is True
    with pytest.raises(MissionStateError):
        board.begin_submit("m1")

    board.edit("m1")
    assert board.begin_submit("m1") is not None
    assert board.status["m1"] is MissionStatus.SENDING
