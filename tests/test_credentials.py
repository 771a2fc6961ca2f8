from conftest import FakeProbe, Reply, make_jwt
from credentials import TokenCache, extract_token

LOGIN = "/api/auth/signin"


def test_extract_token_variants():
    assert extract_token({"token": "a"}) == "a"
    assert extract_token({"accessToken": "b"}) == "b"
    assert extract_token({"data": {"access_token": "c"}}) == "c"
    assert extract_token({}, {"Authorization": "Bearer d"}) == "d"
    assert extract_token("not a dict") is None


def test_one_login_per_role(citizen_config, target):
    jwt = make_jwt({"sub": "1", "role": "CITOYEN"})
    target.route(LOGIN, Reply(200, {"token": jwt}), method="POST")
    cache = TokenCache(citizen_config, FakeProbe(citizen_config, target))

    assert cache.get_token("citoyen") == jwt
    assert cache.get_token("citoyen") == jwt
    assert cache.auth_headers("citoyen") == {"Authorization": f"Bearer {jwt}"}
    assert len(target.hits(LOGIN)) == 1
    assert target.hits(LOGIN)[0].json == {"email": "citoyen@test.local", "password": "Passw0rd!"}


def test_failed_login_cached_as_none(citizen_config, target):
    target.route(LOGIN, Reply(401, {"error": "bad credentials"}), method="POST")
    cache = TokenCache(citizen_config, FakeProbe(citizen_config, target))

    assert cache.get_token("citoyen") is None
    assert cache.get_token("citoyen") is None
    assert len(target.hits(LOGIN)) == 1
    assert cache.cached_roles() == {"citoyen": False}


def test_role_without_credentials_sends_nothing(tokens, target):
    assert tokens.get_token("superadmin") is None
    assert tokens.auth_headers("superadmin") == {}
    assert target.requests == []
