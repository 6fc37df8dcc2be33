from collections import namedtuple
from io import BytesIO

import pytest

from osmsync import MapDataAPI

Request = namedtuple("Request", ("method", "path", "payload", "auth"))


class FakeConnection:
    """ In-memory stand-in for Connection, answers from canned responses. """

    user_agent = "osmsync-test"

    def __init__(self):
        self.requests = []
        self.responses = {}

    def respond(self, method, path, body=b""):
        """
        Register body (bytes) or exception instance for the request.

        Requests without registered response get an empty <osm/> document.

        """
        self.responses[(method, path)] = body

    def request(self, path, method="GET", writer=None, reader=None):
        return self._handle(path, method, writer, reader, False)

    def authenticated_request(self, path, method="GET", writer=None, reader=None):
        return self._handle(path, method, writer, reader, True)

    def _handle(self, path, method, writer, reader, auth):
        payload = None
        if writer is not None:
            buffer = BytesIO()
            writer(buffer)
            payload = buffer.getvalue()
        self.requests.append(Request(method, path, payload, auth))
        response = self.responses.get((method, path), b"<osm/>")
        if isinstance(response, Exception):
            raise response
        if reader is None:
            return None
        return reader.parse(BytesIO(response))


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def api(connection):
    return MapDataAPI(connection)
