import pytest
from fastapi import HTTPException
from jose import jwt

from config import settings
from routers.auth_scope import AuthContext
from services.access_policy import AccessPolicy
from services.dataset_types import DatasetType
from services.session_token import create_session_token, decode_session_token


def test_writer_role_may_calibrate():
    policy = AccessPolicy(writer_roles=["Clinician"])
    policy.ensure_can_calibrate(AuthContext(user_id="u1", roles=["clinician"]), DatasetType.ADHD)


def test_missing_role_is_forbidden():
    policy = AccessPolicy(writer_roles=["clinician"])
    with pytest.raises(HTTPException) as exc_info:
        policy.ensure_can_calibrate(AuthContext(user_id="u1", roles=["viewer"]), DatasetType.DYSLEXIA)
    assert exc_info.value.status_code == 403


def test_anonymous_caller_is_unauthenticated():
    policy = AccessPolicy(writer_roles=["clinician"])
    with pytest.raises(HTTPException) as exc_info:
        policy.ensure_can_calibrate(AuthContext(user_id="", roles=["clinician"]), DatasetType.DYSLEXIA)
    assert exc_info.value.status_code == 401


def test_reset_scope_prefers_upload_over_dataset_type():
    policy = AccessPolicy(writer_roles=["clinician"])
    auth = AuthContext(user_id="u1", roles=["clinician"])

    by_upload = policy.profile_reset_scope(auth, DatasetType.DYSLEXIA, "upload-1")
    by_type = policy.profile_reset_scope(auth, DatasetType.DYSLEXIA)

    assert [clause.left.name for clause in by_upload] == ["source_upload_id", "uploaded_by"]
    assert [clause.left.name for clause in by_type] == ["dataset_type", "uploaded_by"]
    assert all(clause.right.value in ("upload-1", "dyslexia", "u1") for clause in by_upload + by_type)


def test_session_token_round_trips_roles_lowercased():
    token = create_session_token("u1", "u1@example.com", roles=["Clinician", " "])["token"]
    claims = decode_session_token(token)
    assert claims.subject == "u1"
    assert claims.email == "u1@example.com"
    assert claims.roles == ("clinician",)
    assert AuthContext.from_claims(claims).has_any_role(["CLINICIAN", "admin"])


def test_token_signed_with_another_secret_is_rejected():
    forged = jwt.encode({"sub": "u1", "type": "scc_session", "roles": ["admin"]}, "x" * 32, algorithm="HS256")
    with pytest.raises(ValueError):
        decode_session_token(forged)


def test_token_of_another_type_is_rejected():
    forged = jwt.encode({"sub": "u1", "type": "refresh"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        decode_session_token(forged)
