import jwt
import pytest

from renoveasy_auth.application.ports.user_repo import UserType
from renoveasy_auth.application.services.token_service import TokenService
from renoveasy_auth.core.key_manager import generate_rsa_keypair
from renoveasy_auth.exceptions import AuthError, ErrorCode
from renoveasy_auth.infrastructure.persistence.sqlalchemy.repositories.token_repository_sql import SqlTokenRepository
from renoveasy_auth.infrastructure.persistence.sqlalchemy.repositories.user_repository_sql import SqlUserRepository
from renoveasy_auth.utils import epoch_ms, hash_token


@pytest.fixture
def users(engine):
    return SqlUserRepository(engine)


@pytest.fixture
def repo(engine):
    return SqlTokenRepository(engine)


@pytest.fixture
def tokens(repo, users, keys, clock):
    return TokenService(repo=repo, users=users, keys=keys, clock=clock)


@pytest.fixture
def user(users, clock):
    return users.create("+8613812345678", clock())


def _error(fn, *args):
    with pytest.raises(AuthError) as exc:
        fn(*args)
    return exc.value.code


def test_issue_signs_rs256_with_kid(tokens, user, keys):
    pair = tokens.issue(user.id, user.user_type, True)
    header = jwt.get_unverified_header(pair.access_token)
    assert header["alg"] == "RS256"
    assert header["kid"] == keys.jwt_kid
    assert pair.expires_in == 900
    assert pair.token_type == "Bearer"

    claims = tokens.verify_access(pair.access_token)
    assert claims.sub == user.id
    assert claims.jti == pair.access_jti
    assert claims.user_type is None
    assert claims.is_verified
    assert claims.exp - claims.iat == 900


def test_refresh_token_is_stored_hashed(tokens, repo, user):
    pair = tokens.issue(user.id, user.user_type, True)
    assert repo.find_refresh_by_hash(pair.refresh_token) is None


def test_access_token_expires(tokens, user, clock):
    pair = tokens.issue(user.id, user.user_type, True)
    clock.advance(899)
    tokens.verify_access(pair.access_token)
    clock.advance(1)
    assert _error(tokens.verify_access, pair.access_token) == ErrorCode.TOKEN_EXPIRED


def test_foreign_signature_is_rejected(tokens, user, clock):
    private_pem, _ = generate_rsa_keypair()
    forged = jwt.encode(
        {"sub": user.id, "jti": "x", "iat": 0, "exp": 4102444800, "iss": tokens.issuer,
         "aud": tokens.audience, "typ": "access"},
        private_pem,
        algorithm="RS256",
    )
    assert _error(tokens.verify_access, forged) == ErrorCode.TOKEN_SIGNATURE_INVALID


def _signed(tokens, keys, **claims):
    payload = {"sub": "u1", "jti": "j1", "iss": tokens.issuer, "aud": tokens.audience, "typ": "access"}
    payload.update(claims)
    return jwt.encode(payload, keys.jwt_private_pem, algorithm="RS256", headers={"kid": keys.jwt_kid})


def test_future_iat_is_malformed(tokens, keys, clock):
    now = epoch_ms(clock()) // 1000
    skewed = _signed(tokens, keys, iat=now + 30, exp=now + 900)
    assert tokens.verify_access(skewed).iat == now + 30
    future = _signed(tokens, keys, iat=now + 3600, exp=now + 7200)
    assert _error(tokens.verify_access, future) == ErrorCode.TOKEN_MALFORMED


@pytest.mark.parametrize("token", ["", "abc", "a.b.c"])
def test_garbage_is_malformed(tokens, token):
    assert _error(tokens.verify_access, token) == ErrorCode.TOKEN_MALFORMED


def test_refresh_rotates_and_revokes_old_access(tokens, user):
    first = tokens.issue(user.id, user.user_type, True)
    second = tokens.refresh(first.refresh_token)
    assert second.refresh_token != first.refresh_token
    assert tokens.verify_access(second.access_token).sub == user.id
    assert _error(tokens.verify_access, first.access_token) == ErrorCode.TOKEN_REVOKED


def test_refresh_carries_current_user_type(tokens, users, user):
    first = tokens.issue(user.id, user.user_type, True)
    users.update_user_type(user.id, UserType.WORKER)
    second = tokens.refresh(first.refresh_token)
    assert tokens.verify_access(second.access_token).user_type == "worker"


def test_refresh_reuse_revokes_family(tokens, user):
    r0 = tokens.issue(user.id, user.user_type, True)
    r1 = tokens.refresh(r0.refresh_token)
    assert _error(tokens.refresh, r0.refresh_token) == ErrorCode.REFRESH_REUSE_DETECTED
    assert _error(tokens.refresh, r1.refresh_token) == ErrorCode.TOKEN_REVOKED
    assert _error(tokens.verify_access, r1.access_token) == ErrorCode.TOKEN_REVOKED


def test_reuse_leaves_other_sessions_alone(tokens, user):
    phone_session = tokens.issue(user.id, user.user_type, True)
    tablet_session = tokens.issue(user.id, user.user_type, True)
    tokens.refresh(phone_session.refresh_token)
    _error(tokens.refresh, phone_session.refresh_token)
    assert tokens.refresh(tablet_session.refresh_token)


def test_refresh_token_expires(tokens, user, clock):
    pair = tokens.issue(user.id, user.user_type, True)
    clock.advance(30 * 86400 + 1)
    assert _error(tokens.refresh, pair.refresh_token) == ErrorCode.TOKEN_EXPIRED


@pytest.mark.parametrize("token", ["", "never-issued"])
def test_unknown_refresh_token(tokens, token):
    assert _error(tokens.refresh, token) == ErrorCode.TOKEN_MALFORMED


def test_logout_revokes_everything(tokens, user):
    a = tokens.issue(user.id, user.user_type, True)
    b = tokens.issue(user.id, user.user_type, True)
    b2 = tokens.refresh(b.refresh_token)
    assert tokens.revoke_all(user.id) == 2
    for pair in (a, b, b2):
        assert _error(tokens.verify_access, pair.access_token) == ErrorCode.TOKEN_REVOKED
        assert _error(tokens.refresh, pair.refresh_token) == ErrorCode.TOKEN_REVOKED


def test_refresh_revocation_is_compare_and_set(tokens, repo, user):
    pair = tokens.issue(user.id, user.user_type, True)
    token_hash = hash_token(pair.refresh_token)
    assert repo.revoke_refresh(token_hash, "rotated")
    assert not repo.revoke_refresh(token_hash, "rotated")


def test_revoked_jti_lookup_honours_expiry(repo, clock):
    repo.insert_revoked_jti("jti-1", clock())
    assert not repo.is_jti_revoked("jti-1", clock())
    clock.advance(-1)
    assert repo.is_jti_revoked("jti-1", clock())
