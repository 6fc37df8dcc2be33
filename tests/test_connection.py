from io import BytesIO
from unittest.mock import patch

import pytest

from osmsync import (APIError, BadInputError, ConflictError, Connection, ElementParser, IdParser,
                     ListElementHandler, MalformedResponseError, NotFoundError, PreconditionFailedError,
                     ServiceUnavailableError, UnauthorizedError)


class FakeResponse(BytesIO):
    def __init__(self, status, body=b"", reason="OK", headers=None):
        BytesIO.__init__(self, body)
        self.status = status
        self.reason = reason
        self.headers = headers or {}

    def getheader(self, name, default=None):
        return self.headers.get(name, default)


@pytest.fixture
def http():
    with patch("osmsync.HTTPSConnection") as cls:
        yield cls


def respond(http, *responses):
    http.return_value.getresponse.side_effect = list(responses)
    return http.return_value


def test_request_parses_response(http):
    conn = respond(http, FakeResponse(200, b"<osm><node id='1' lat='0' lon='0'/></osm>"))
    handler = ListElementHandler()
    Connection().request("node/1", reader=ElementParser(handler))
    http.assert_called_once_with("api.openstreetmap.org", timeout=None)
    conn.request.assert_called_once_with("GET", "/api/0.6/node/1", None,
                                         {"User-Agent": Connection().user_agent})
    conn.close.assert_called_once_with()
    assert [node.id for node in handler.elements] == [1]


def test_request_returns_reader_result(http):
    respond(http, FakeResponse(200, b"42"))
    assert Connection().request("changeset/create", "PUT", reader=IdParser()) == 42


def test_response_is_drained_without_reader(http):
    response = FakeResponse(200, b"<diffResult>" + b"<node old_id='1'/>" * 1000 + b"</diffResult>")
    respond(http, response)
    assert Connection().request("changeset/1/upload", "POST") is None
    assert response.read() == b""


def test_connection_closed_on_parse_failure(http):
    conn = respond(http, FakeResponse(200, b"<osm><node/></osm>"))
    with pytest.raises(MalformedResponseError):
        Connection().request("node/1", reader=ElementParser(ListElementHandler()))
    conn.close.assert_called_once_with()


def test_writer_payload(http):
    conn = respond(http, FakeResponse(200))
    Connection(username="user", password="pass").authenticated_request(
        "changeset/1/close", "PUT", writer=lambda fp: fp.write(b"<osm/>"))
    method, path, payload, headers = conn.request.call_args[0]
    assert (method, path, payload) == ("PUT", "/api/0.6/changeset/1/close", b"<osm/>")
    assert headers["Content-Type"] == "text/xml; charset=utf-8"
    assert headers["Authorization"] == "Basic dXNlcjpwYXNz"


def test_authenticated_request_without_credentials(http):
    with pytest.raises(UnauthorizedError):
        Connection().authenticated_request("changeset/create", "PUT")
    http.assert_not_called()


@pytest.mark.parametrize("status, cls", [
    (400, BadInputError),
    (401, UnauthorizedError),
    (403, UnauthorizedError),
    (404, NotFoundError),
    (409, ConflictError),
    (410, NotFoundError),
    (412, PreconditionFailedError),
    (500, ServiceUnavailableError),
    (503, ServiceUnavailableError),
    (418, APIError),
])
def test_error_status(http, status, cls):
    conn = respond(http, FakeResponse(status, b"Something went wrong", reason="Reason"))
    with pytest.raises(cls) as excinfo:
        Connection().request("node/1", reader=IdParser())
    assert type(excinfo.value) is cls
    assert excinfo.value.http_status == status
    assert excinfo.value.reason == "Something went wrong"
    assert str(excinfo.value) == "HTTP error {} (Reason). Something went wrong".format(status)
    conn.close.assert_called_once_with()


def test_no_retry_on_server_error(http):
    conn = respond(http, FakeResponse(503, reason="Unavailable"), FakeResponse(200, b"1"))
    with pytest.raises(ServiceUnavailableError):
        Connection().request("node/1", reader=IdParser())
    assert conn.request.call_count == 1


def test_redirect(http):
    conn = respond(http,
                   FakeResponse(301, reason="Moved", headers={"Location": "https://other.example.org/api/0.6/node/1"}),
                   FakeResponse(200, b"7"))
    assert Connection().request("node/1", reader=IdParser()) == 7
    assert http.call_args_list[1][0] == ("other.example.org",)
    assert conn.request.call_args_list[1][0][1] == "/api/0.6/node/1"
    assert conn.close.call_count == 2


def test_see_other_redirect_switches_to_get(http):
    conn = respond(http,
                   FakeResponse(303, reason="See Other", headers={"Location": "/api/0.6/changeset/1"}),
                   FakeResponse(200, b"1"))
    Connection(username="user", password="pass").authenticated_request(
        "changeset/1/upload", "POST", writer=lambda fp: fp.write(b"<osmChange/>"), reader=IdParser())
    method, path, payload, headers = conn.request.call_args_list[1][0]
    assert (method, path, payload) == ("GET", "/api/0.6/changeset/1", None)
    assert "Content-Type" not in headers
    assert headers["Authorization"] == "Basic dXNlcjpwYXNz"


def test_temporary_redirect_keeps_method(http):
    conn = respond(http,
                   FakeResponse(307, reason="Temporary Redirect", headers={"Location": "/api/0.6/changeset/1/upload"}),
                   FakeResponse(200))
    Connection(username="user", password="pass").authenticated_request(
        "changeset/1/upload", "POST", writer=lambda fp: fp.write(b"<osmChange/>"))
    method, path, payload, headers = conn.request.call_args_list[1][0]
    assert (method, payload) == ("POST", b"<osmChange/>")


def test_redirect_without_location(http):
    respond(http, FakeResponse(302, reason="Found"))
    with pytest.raises(APIError):
        Connection().request("node/1")


def test_insecure_connection():
    with patch("osmsync.HTTPConnection") as http:
        respond(http, FakeResponse(200))
        Connection(server="localhost:3000", secure=False).request("map?bbox=0,0,1,1")
        http.assert_called_once_with("localhost:3000", timeout=None)


def test_user_agent():
    assert Connection().user_agent.startswith("osmsync/")
    assert Connection(user_agent="MyEditor 1.0").user_agent == "MyEditor 1.0"
