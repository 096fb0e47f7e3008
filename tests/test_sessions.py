from vibecoder.server.sessions import SessionStore


def test_get_or_create_is_idempotent():
    store = SessionStore()
    a = store.get_or_create("C1:1.0")
    b = store.get_or_create("C1:1.0")
    assert a is b
    assert a.agent_session_id is None
    assert len(store) == 1


def test_update_token_creates_and_overwrites():
    store = SessionStore()
    store.update_token("C1:1.0", "sid-1")
    assert store.get("C1:1.0").agent_session_id == "sid-1"
    store.update_token("C1:1.0", "sid-2")
    assert store.get("C1:1.0").agent_session_id == "sid-2"


def test_delete():
    store = SessionStore()
    store.get_or_create("k")
    store.delete("k")
    store.delete("k")
    assert store.get("k") is None


def test_cleanup_old_sessions():
    store = SessionStore()
    store.get_or_create("old").last_active = 0.0
    store.get_or_create("new").last_active = 950.0
    assert store.cleanup_old_sessions(max_age=100, now=1000.0) == 1
    assert store.get("old") is None
    assert store.get("new") is not None
