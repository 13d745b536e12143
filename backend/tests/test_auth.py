import time

import jwt

from payfesa.utils.jwt_utils import create_access_token, decode_token, user_id_from_header


def test_access_token_round_trip(app, member):
    token = create_access_token(member.id)
    assert decode_token(token)["sub"] == str(member.id)
    assert user_id_from_header(f"Bearer {token}") == member.id


def test_expired_token_is_refused(app, member, client):
    token = create_access_token(member.id, ttl_seconds=-10)
    assert decode_token(token) is None
    res = client.get("/api/settlements", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_refresh_style_token_is_not_an_access_token(app, member):
    now = int(time.time())
    token = jwt.encode({"sub": str(member.id), "exp": now + 60, "type": "refresh"}, app.config["SECRET_KEY"],
                       algorithm="HS256")
    assert decode_token(token) is None
    assert decode_token(token, expected_type="refresh")["sub"] == str(member.id)


def test_token_signed_with_another_key(app, member):
    token = jwt.encode({"sub": str(member.id), "type": "access"}, "not-our-secret-key-at-all-0123456789abcdef", algorithm="HS256")
    assert decode_token(token) is None


def test_malformed_headers(app):
    assert user_id_from_header("") is None
    assert user_id_from_header("Token abc") is None
    assert user_id_from_header("Bearer not.a.jwt") is None
