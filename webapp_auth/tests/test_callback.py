"""Tests for the callback state machine: state check, code exchange, verification, provisioning."""
import threading

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from webapp_auth.callback import CallbackVerifier
from webapp_auth.database import init_db, make_engine, make_session_factory
from webapp_auth.errors import ExchangeFailed, InvalidState, ProviderUnavailable, TokenVerificationFailed
from webapp_auth.flow_store import STATE_KEY, VERIFIER_KEY, AuthFlowState, start_login, store_flow
from webapp_auth.sessions import USER_ID_KEY, get_user_id
from webapp_auth.users import SqlUserStore, UserProvisioner


@pytest.fixture
def user_store(session_factory):
    return SqlUserStore(session_factory)


@pytest.fixture
def verifier(provider, user_store):
    return CallbackVerifier(provider, UserProvisioner(user_store))


@pytest.fixture
def session(session_store):
    s = session_store.get(None)
    store_flow(s, AuthFlowState(state="expected-state", code_verifier="stored-verifier"))
    return s


def _flow_cleared(session_store, session) -> bool:
    stored = session_store.get(session.id)
    return STATE_KEY not in stored and VERIFIER_KEY not in stored


def test_success_binds_user_to_session(verifier, session, session_store, stub, user_store):
    user = verifier.complete(session, code="good-code", state="expected-state")
    assert user.external_subject == stub.subject
    assert user.email == stub.email
    assert user.display_name == stub.name
    assert get_user_id(session_store.get(session.id)) == user.id
    assert _flow_cleared(session_store, session)
    assert user_store.find_by_external_subject(stub.subject).id == user.id


def test_exchange_uses_stored_verifier(verifier, session, stub):
    verifier.complete(session, code="good-code", state="expected-state")
    assert stub.token_requests[0]["code_verifier"] == "stored-verifier"
    assert stub.token_requests[0]["code"] == "good-code"


def test_state_mismatch_never_reaches_token_endpoint(verifier, session, session_store, stub):
    with pytest.raises(InvalidState):
        verifier.complete(session, code="good-code", state="attacker-state")
    assert not stub.token_endpoint_reached
    assert _flow_cleared(session_store, session)
    assert get_user_id(session_store.get(session.id)) is None


def test_missing_stored_state(verifier, session_store, stub):
    s = session_store.get(None)
    with pytest.raises(InvalidState):
        verifier.complete(s, code="xyz", state="abc")
    assert not stub.token_endpoint_reached


def test_missing_state_param(verifier, session, stub):
    with pytest.raises(InvalidState):
        verifier.complete(session, code="good-code", state=None)
    assert not stub.token_endpoint_reached


def test_non_ascii_state_rejected(verifier, session, stub):
    with pytest.raises(InvalidState):
        verifier.complete(session, code="good-code", state="état")
    assert not stub.token_endpoint_reached


def test_replayed_callback_rejected(verifier, session, stub):
    verifier.complete(session, code="good-code", state="expected-state")
    with pytest.raises(InvalidState):
        verifier.complete(session, code="good-code", state="expected-state")
    assert len(stub.token_requests) == 1


def test_provider_error_param(verifier, session, session_store, stub):
    with pytest.raises(ExchangeFailed):
        verifier.complete(session, code=None, state="expected-state", error="access_denied")
    assert not stub.token_endpoint_reached
    assert _flow_cleared(session_store, session)


def test_missing_code(verifier, session, stub):
    with pytest.raises(ExchangeFailed):
        verifier.complete(session, code=None, state="expected-state")
    assert not stub.token_endpoint_reached


def test_exchange_rejected_clears_flow(verifier, session, session_store, stub):
    stub.token_status = 400
    with pytest.raises(ExchangeFailed):
        verifier.complete(session, code="used-code", state="expected-state")
    assert stub.token_endpoint_reached
    assert _flow_cleared(session_store, session)
    assert get_user_id(session_store.get(session.id)) is None


def test_exchange_timeout_clears_flow(verifier, session, session_store, stub):
    stub.token_raises = httpx.ConnectTimeout("timed out")
    with pytest.raises(ExchangeFailed):
        verifier.complete(session, code="good-code", state="expected-state")
    assert _flow_cleared(session_store, session)


def test_token_signed_with_unpublished_key(verifier, session, session_store, stub, user_store):
    rogue = generate_private_key(65537, 2048)
    stub.next_id_token = stub.sign_id_token(private_key=rogue, kid="rogue")
    with pytest.raises(TokenVerificationFailed):
        verifier.complete(session, code="good-code", state="expected-state")
    assert user_store.find_by_external_subject(stub.subject) is None
    assert USER_ID_KEY not in session_store.get(session.id)


def test_token_for_other_client(verifier, session, stub):
    stub.next_id_token = stub.sign_id_token(aud="other-client")
    with pytest.raises(TokenVerificationFailed):
        verifier.complete(session, code="good-code", state="expected-state")


def test_token_with_empty_subject(verifier, session, stub):
    stub.next_id_token = stub.sign_id_token(sub="")
    with pytest.raises(TokenVerificationFailed):
        verifier.complete(session, code="good-code", state="expected-state")


def test_discovery_down(verifier, session, session_store, stub):
    stub.discovery_down = True
    with pytest.raises(ProviderUnavailable):
        verifier.complete(session, code="good-code", state="expected-state")
    assert _flow_cleared(session_store, session)


def test_new_login_replaces_pending_flow(verifier, provider, session, stub):
    start_login(session, provider)
    with pytest.raises(InvalidState):
        verifier.complete(session, code="good-code", state="expected-state")
    assert not stub.token_endpoint_reached


class LockstepSqlUserStore(SqlUserStore):
    """Holds the first lookups until both callbacks have seen "no such user"."""

    def __init__(self, session_factory, parties: int):
        super().__init__(session_factory)
        self._barrier = threading.Barrier(parties)
        self._lock = threading.Lock()
        self._waiting = parties

    def find_by_external_subject(self, subject):
        user = super().find_by_external_subject(subject)
        with self._lock:
            wait = self._waiting > 0
            self._waiting -= 1
        if wait:
            self._barrier.wait(timeout=10)
        return user


def test_concurrent_first_callbacks_share_one_user(provider, session_store, stub, tmp_path):
    # File-backed so each thread gets its own connection and the unique index arbitrates
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    store = LockstepSqlUserStore(make_session_factory(engine), parties=2)
    verifier = CallbackVerifier(provider, UserProvisioner(store))

    sessions = []
    for i in range(2):
        s = session_store.get(None)
        store_flow(s, AuthFlowState(state=f"state-{i}", code_verifier=f"verifier-{i}"))
        sessions.append(s)
    results, errors = {}, []

    def run(i):
        try:
            results[i] = verifier.complete(sessions[i], code=f"code-{i}", state=f"state-{i}")
        except Exception as e:  # surfaced in the assertion below
            errors.append(e)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=15)

    try:
        assert errors == []
        assert results[0].id == results[1].id
        user_ids = {get_user_id(session_store.get(s.id)) for s in sessions}
        assert user_ids == {results[0].id}
        assert store.find_by_external_subject(stub.subject).id == results[0].id
    finally:
        engine.dispose()
