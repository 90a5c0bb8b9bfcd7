"""Tests for the session store."""

import json

from deployctl.deployment.models import (
    AlarmState,
    DeploymentSession,
    HistoryEntry,
    RolloutStrategy,
    SessionState,
    Step,
    Version,
)
from deployctl.deployment.store import SessionStore


def make_session(session_id="s1", state=SessionState.SHIFTING):
    return DeploymentSession(
        session_id=session_id,
        target="checkout",
        stable_version=Version("v1"),
        candidate_version=Version("v2"),
        strategy=RolloutStrategy.canary(10, 300),
        steps=[Step(10.0, 300.0), Step(100.0, 0.0)],
        state=state,
    )


class TestSessionStore:
    """Tests for append-only session records."""

    def test_latest_record_wins(self):
        store = SessionStore()
        session = make_session()
        store.append(session)
        session.state = SessionState.MONITORING
        session.history.append(HistoryEntry(0, 10.0, AlarmState.OK))
        store.append(session)

        latest = store.get("s1")

        assert latest.state == SessionState.MONITORING
        assert latest.history[0].verdict == AlarmState.OK
        assert len(store.records("s1")) == 2

    def test_records_are_not_rewritten(self):
        store = SessionStore()
        session = make_session()
        store.append(session)
        session.state = SessionState.ROLLED_BACK
        store.append(session)

        states = [r["state"] for r in store.records("s1")]
        assert states == ["SHIFTING", "ROLLED_BACK"]

    def test_unknown_session(self):
        assert SessionStore().get("missing") is None

    def test_jsonl_persistence(self, tmp_path):
        store = SessionStore(tmp_path)
        store.append(make_session("s1"))
        store.append(make_session("s2", SessionState.SUCCEEDED))

        lines = (tmp_path / SessionStore.FILENAME).read_text().splitlines()
        assert [json.loads(line)["session_id"] for line in lines] == ["s1", "s2"]

        reloaded = SessionStore(tmp_path)
        assert reloaded.load() == 2
        assert reloaded.session_ids() == ["s1", "s2"]
        assert reloaded.get("s2").state == SessionState.SUCCEEDED
        assert reloaded.get("s2").strategy == RolloutStrategy.canary(10, 300)

    def test_corrupt_lines_skipped(self, tmp_path):
        store = SessionStore(tmp_path)
        store.append(make_session("s1"))
        with open(tmp_path / SessionStore.FILENAME, "a", encoding="utf-8") as f:
            f.write("{not json\n")

        reloaded = SessionStore(tmp_path)

        assert reloaded.load() == 1

    def test_load_without_file(self, tmp_path):
        assert SessionStore(tmp_path).load() == 0
        assert SessionStore().load() == 0
