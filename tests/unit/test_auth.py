import httpx
import pytest

from cardsync.dav.auth import FallbackAuth, is_digest_challenge

DIGEST_CHALLENGE = 'Digest realm="SabreDAV", qop="auth", nonce="5f1c2a", opaque="abc"'


class _Server:
    """Mock server that accepts only the auth scheme it was built with."""

    def __init__(self, scheme: str, challenge: str) -> None:
        self.scheme = scheme
        self.challenge = challenge
        self.requests: list[httpx.Request] = []
        self.headers: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        # Auth flows re-yield the same request object, so capture the header now.
        self.requests.append(request)
        self.headers.append(request.headers.get("Authorization", ""))
        if request.headers.get("Authorization", "").startswith(self.scheme):
            return httpx.Response(207, content=b"<multistatus xmlns='DAV:'/>")
        return httpx.Response(401, headers={"WWW-Authenticate": self.challenge})

    @property
    def schemes(self) -> list[str]:
        return [h.split(" ", 1)[0] for h in self.headers]


def _client(server: _Server, auth: FallbackAuth) -> httpx.Client:
    return httpx.Client(auth=auth, transport=httpx.MockTransport(server))


@pytest.mark.parametrize(
    "values, expected",
    [
        (DIGEST_CHALLENGE, True),
        (['Basic realm="x"', DIGEST_CHALLENGE], True),
        ('Basic realm="x"', False),
        ("Digest", False),
        ('Digest qop="auth"', False),
        (None, False),
        ([], False),
    ],
)
def test_is_digest_challenge(values, expected) -> None:
    assert is_digest_challenge(values) is expected


def test_basic_accepted_sends_single_request() -> None:
    server = _Server("Basic", 'Basic realm="dav"')
    auth = FallbackAuth("alice", "s3cret")

    with _client(server, auth) as client:
        resp = client.request("PROPFIND", "https://dav.example.com/")

    assert resp.status_code == 207
    assert server.schemes == ["Basic"]
    assert not auth.uses_digest


def test_digest_challenge_switches_to_digest() -> None:
    server = _Server("Digest", DIGEST_CHALLENGE)
    auth = FallbackAuth("alice", "s3cret")

    with _client(server, auth) as client:
        resp = client.request("PROPFIND", "https://dav.example.com/", content=b"<propfind/>")

    assert resp.status_code == 207
    assert auth.uses_digest
    assert server.schemes[0] == "Basic"
    assert server.schemes[-1] == "Digest"
    assert server.requests[-1].content == b"<propfind/>"
    assert 'username="alice"' in server.headers[-1]


def test_digest_is_sticky_for_the_auth_instance() -> None:
    server = _Server("Digest", DIGEST_CHALLENGE)
    auth = FallbackAuth("alice", "s3cret")

    with _client(server, auth) as client:
        client.get("https://dav.example.com/a.vcf")
        first_round = len(server.requests)
        client.get("https://dav.example.com/b.vcf")

    assert "Basic" not in server.schemes[first_round:]
    assert server.schemes[-1] == "Digest"


def test_stickiness_does_not_leak_between_instances() -> None:
    digest_server = _Server("Digest", DIGEST_CHALLENGE)
    basic_server = _Server("Basic", 'Basic realm="dav"')

    with _client(digest_server, FallbackAuth("alice", "s3cret")) as client:
        client.get("https://one.example.com/")
    other = FallbackAuth("alice", "s3cret")
    with _client(basic_server, other) as client:
        resp = client.get("https://two.example.com/")

    assert resp.status_code == 207
    assert basic_server.schemes == ["Basic"]
    assert not other.uses_digest


def test_non_digest_401_is_returned_unchanged() -> None:
    server = _Server("Bearer", 'Basic realm="dav"')
    auth = FallbackAuth("alice", "wrong")

    with _client(server, auth) as client:
        resp = client.get("https://dav.example.com/")

    assert resp.status_code == 401
    assert server.schemes == ["Basic"]
    assert not auth.uses_digest


def test_wrong_digest_credentials_surface_401() -> None:
    server = _Server("Nothing", DIGEST_CHALLENGE)
    auth = FallbackAuth("alice", "wrong")

    with _client(server, auth) as client:
        resp = client.get("https://dav.example.com/")

    assert resp.status_code == 401
    assert auth.uses_digest
