# -*- coding: utf-8 -*-
"""
Osmsync is a set of tools for reading and uploading OSM map data via OSM API.

Responses are decoded in a single pass while they are being downloaded, every
parsed element is passed to a handler as soon as its closing tag arrives.

Classes:
    Connection          --- Interface for accessing OSM API over HTTP.
    MapDataAPI          --- Map data queries and changeset uploads.
    ElementFactory      --- Creates element wrappers for the parsers.
    Node                --- Node wrapper.
    Way                 --- Way wrapper.
    Relation            --- Relation wrapper.
    Member              --- Relation member (type, ref, role).
    Changeset           --- Changeset wrapper.
    BoundingBox         --- Area given by its latitude and longitude bounds.
    OSM                 --- OSM XML document wrapper.
    OSC                 --- OSC XML document wrapper.
    DiffEntry           --- One element of the diff upload result.
    ElementParser       --- Streaming parser of OSM XML documents.
    ChangesParser       --- Streaming parser of OSC XML documents.
    DiffParser          --- Streaming parser of diff upload results.
    APIError            --- OSM API exception, base of all other exceptions.

"""

__license__ = "LGPL 3.0"

__version__ = "0.1.0"

from abc import ABCMeta, abstractmethod
from base64 import b64encode
from collections import namedtuple
from collections.abc import MutableSet
from functools import partial
from http.client import HTTPConnection, HTTPException, HTTPSConnection
from io import BytesIO
from itertools import chain
import logging
from urllib.parse import urlsplit
import xml.etree.ElementTree as ET


__all__ = ["Connection",
           "MapDataAPI",
           "ElementFactory",
           "Node",
           "Way",
           "Relation",
           "Member",
           "Changeset",
           "BoundingBox",
           "OSM",
           "OSC",
           "DiffEntry",
           "ElementHandler",
           "SingleElementHandler",
           "ListElementHandler",
           "ChangesHandler",
           "DiffHandler",
           "DiffCollector",
           "ElementUpdater",
           "ElementParser",
           "ChangesParser",
           "DiffParser",
           "IdParser",
           "APIError",
           "UnauthorizedError",
           "NotFoundError",
           "BadInputError",
           "QueryTooLargeError",
           "ConflictError",
           "PreconditionFailedError",
           "ServiceUnavailableError",
           "MalformedResponseError"]


logging.getLogger("osmsync").addHandler(logging.NullHandler())

API_VERSION = "0.6"
ELEMENT_TYPES = ("node", "way", "relation")
CHANGE_ACTIONS = ("create", "modify", "delete")
# Attributes the server sets by itself, never sent with an upload.
UPLOAD_STRIP = ("user", "uid", "visible", "timestamp", "changeset")


############################################################
### Connection class.                                    ###
############################################################

class Connection:
    """
    Interface for accessing OSM API over HTTP.

    Class attributes:
        server          --- Default domain name of OSM API.
        basepath        --- Default path to the API on the server.
        headers         --- Default headers for HTTP request.
        max_redirects   --- How many redirections are followed.

    Attributes:
        username        --- Username for API authentication.
        password        --- Password for API authentication.
        user_agent      --- Identifier of the client, sent with every request.
        secure          --- Use HTTPS.
        timeout         --- Socket timeout in seconds, or None.

    Methods:
        request                 --- Perform HTTP request, feed the response to reader.
        authenticated_request   --- Perform HTTP request with Authorization header.

    """

    server = "api.openstreetmap.org"
    basepath = "/api/{}/".format(API_VERSION)
    headers = {}
    max_redirects = 5
    log = logging.getLogger("osmsync.http")

    def __init__(self, server=None, basepath=None, username="", password="",
                 user_agent=None, secure=True, timeout=None):
        if server is not None:
            self.server = server
        if basepath is not None:
            self.basepath = basepath
        self.username = username
        self.password = password
        if user_agent is None:
            user_agent = "osmsync/{}".format(__version__)
        self.user_agent = user_agent
        self.secure = secure
        self.timeout = timeout

    def request(self, path, method="GET", writer=None, reader=None):
        """
        Perform HTTP request and feed the response to reader.

        Return the value returned by reader.parse() or None. The response
        stream is read till its end even when no reader is given.

        Arguments:
            path        --- Path relative to basepath.

        Keyworded arguments:
            method      --- HTTP request method.
            writer      --- Callable writing the request body into a binary file object.
            reader      --- Object with parse(fp) method consuming the response.

        """
        return self._request(path, method, writer, reader, {})

    def authenticated_request(self, path, method="GET", writer=None, reader=None):
        """
        Perform HTTP request with Authorization header.

        Raise UnauthorizedError without sending anything when no username
        is configured. Arguments are the same as for request().

        """
        if not self.username:
            raise UnauthorizedError("No credentials for authenticated request.")
        return self._request(path, method, writer, reader, {"Authorization": self._get_auth_header()})

    def _get_auth_header(self):
        """ Get value of Authorization header. """
        credentials = "{}:{}".format(self.username, self.password).encode("utf-8")
        return "Basic " + b64encode(credentials).decode().strip()

    def _connect(self, server, secure):
        if secure:
            return HTTPSConnection(server, timeout=self.timeout)
        return HTTPConnection(server, timeout=self.timeout)

    def _request(self, path, method, writer, reader, headers):
        payload = None
        if writer is not None:
            buffer = BytesIO()
            writer(buffer)
            payload = buffer.getvalue()
        req_headers = dict(self.headers)
        req_headers["User-Agent"] = self.user_agent
        if payload is not None:
            req_headers["Content-Type"] = "text/xml; charset=utf-8"
        req_headers.update(headers)

        server = self.server
        secure = self.secure
        path = "{}{}".format(self.basepath, path)
        for _ in range(self.max_redirects + 1):
            self.log.debug("{} {}{} << payload {}".format(method, server, path, payload is not None))
            connection = self._connect(server, secure)
            try:
                connection.request(method, path, payload, req_headers)
                response = connection.getresponse()
                if response.status == 200:
                    if reader is None:
                        response.read()
                        return None
                    return reader.parse(response)
                elif response.status in (301, 302, 303, 307):
                    response.read()
                    location = response.getheader("Location")
                    if location is None:
                        self.log.error("Got code {}, but no location header.".format(response.status))
                        raise APIError("Unable to redirect the request.", payload, response.reason, response.status)
                    self.log.debug("Redirecting to {}".format(location))
                    if response.status == 303:
                        method = "GET"
                        payload = None
                        req_headers.pop("Content-Type", None)
                    url = urlsplit(location)
                    if url.netloc:
                        server = url.netloc
                        secure = url.scheme == "https"
                    path = url.path
                    if url.query:
                        path += "?" + url.query
                else:
                    body = response.read().decode("utf-8", "replace").strip()
                    self.log.error("Got error {} ({}).".format(response.reason, response.status))
                    raise error_for_status(response.status, body, payload, response.reason)
            finally:
                connection.close()
        raise APIError("Too many redirects.", payload)


############################################################
### MapDataAPI class.                                    ###
############################################################

class MapDataAPI:
    """
    Map data queries and changeset uploads.

    Attributes:
        connection      --- Connection (or compatible object) used for requests.
        factory         --- ElementFactory passed to every parser.

    Methods:
        synchronize         --- Upload elements in a new changeset.
        update_map          --- Upload elements in a new changeset with comment and source.
        open_changeset      --- Create changeset.
        upload_diff         --- OSC diff upload into an open changeset.
        close_changeset     --- Close changeset.

        get_bbox            --- Download map data inside the specified bbox.
        get_element         --- Download node/way/relation by id and optionally version.
        get_element_full    --- Download way/relation and all elements it references.
        get_elements        --- Download nodes/ways/relations by ids.
        get_element_rels    --- Download relations that reference the node/way/relation.
        get_node_ways       --- Download ways that reference the node.
        get_changeset_full  --- Download changeset contents.

    """

    log = logging.getLogger("osmsync.api")

    def __init__(self, connection=None, factory=None):
        if connection is None:
            connection = Connection()
        if factory is None:
            factory = ElementFactory()
        self.connection = connection
        self.factory = factory

    @staticmethod
    def _check_type(type_, allowed=ELEMENT_TYPES):
        if type_ not in allowed:
            raise ValueError("Type must be from {}.".format(", ".join(allowed)))

    @staticmethod
    def _element_id(element):
        if isinstance(element, OSMPrimitive):
            return element.id
        return element

    def _get(self, path, handler):
        self.connection.request(path, reader=ElementParser(handler, self.factory))

    ##################################################
    # Changesets                                     #
    ##################################################
    def synchronize(self, tags, elements, handler=None):
        """
        Upload elements in a new changeset.

        The changeset is opened, the elements are uploaded as a single diff
        and the changeset is closed again, also when the upload fails. In
        that case the upload error is raised, a failure to close the
        changeset is only logged.

        Return id of the changeset.

        Arguments:
            tags        --- Dictionary with changeset tags, created_by is added.
            elements    --- Iterable of Node/Way/Relation wrappers. Negative
                            ids are created, invisible elements deleted, the
                            rest modified.

        Keyworded arguments:
            handler     --- DiffHandler receiving the DiffEntry of each element.

        """
        tags = dict(tags)
        tags["created_by"] = self.connection.user_agent
        osc = OSC.from_elements(elements)
        changeset = self.open_changeset(tags)
        try:
            self.upload_diff(changeset.id, osc, handler)
        except BaseException:
            self._close_after_failure(changeset)
            raise
        self.close_changeset(changeset)
        return changeset.id

    def update_map(self, comment, source, elements, handler=None):
        """
        Upload elements in a new changeset with comment and source tags.

        See synchronize().

        """
        tags = {}
        if comment is not None:
            tags["comment"] = comment
        if source is not None:
            tags["source"] = source
        return self.synchronize(tags, elements, handler)

    def open_changeset(self, tags):
        """
        Create changeset.

        Return Changeset wrapper with id assigned by the server.

        Arguments:
            tags        --- Dictionary with changeset tags.

        """
        changeset = Changeset(tags=tags)
        changeset.attribs["id"] = self.connection.authenticated_request(
            "changeset/create", "PUT", writer=changeset.write, reader=IdParser())
        changeset.attribs["open"] = True
        self.log.info("Opened changeset {}.".format(changeset.id))
        return changeset

    def upload_diff(self, changeset, osc, handler=None):
        """
        OSC diff upload.

        Without handler the diff result is downloaded, but not parsed.

        Arguments:
            changeset   --- Changeset wrapper or changeset id.
            osc         --- OSC wrapper.

        Keyworded arguments:
            handler     --- DiffHandler receiving the DiffEntry of each element.

        """
        if not isinstance(osc, OSC):
            raise TypeError("Osc must be OSC instance.")
        if isinstance(changeset, Changeset):
            changeset = changeset.id
        reader = None
        if handler is not None:
            if isinstance(handler, ElementUpdater) and handler.changeset is None:
                handler.changeset = changeset
            reader = DiffParser(handler)
        writer = partial(osc.write, strip=UPLOAD_STRIP, changeset=changeset)
        self.log.info("Uploading {} elements into changeset {}.".format(len(osc), changeset))
        self.connection.authenticated_request(
            "changeset/{}/upload".format(changeset), "POST", writer=writer, reader=reader)

    def close_changeset(self, changeset):
        """
        Close changeset.

        Arguments:
            changeset   --- Changeset wrapper or changeset id.

        """
        changeset_id = changeset.id if isinstance(changeset, Changeset) else changeset
        self.connection.authenticated_request("changeset/{}/close".format(changeset_id), "PUT")
        if isinstance(changeset, Changeset):
            changeset.attribs["open"] = False
        self.log.info("Closed changeset {}.".format(changeset_id))

    def _close_after_failure(self, changeset):
        try:
            self.close_changeset(changeset)
        except Exception:
            self.log.warning("Could not close changeset {} after failed upload.".format(changeset.id),
                             exc_info=True)

    ##################################################
    # READ API                                       #
    ##################################################
    def get_bbox(self, bounds, handler=None):
        """
        Download map data inside the specified bbox.

        Raise ValueError if the bounds cross the 180th meridian and
        QueryTooLargeError if the server refuses the area.

        Return the handler, OSM wrapper if none was given.

        Arguments:
            bounds      --- BoundingBox or (min_lat, min_lon, max_lat, max_lon).

        Keyworded arguments:
            handler     --- ElementHandler.

        """
        bounds = BoundingBox.create(*bounds)
        if bounds.crosses_180th_meridian:
            raise ValueError("Bounds may not cross the 180th meridian.")
        if handler is None:
            handler = OSM()
        path = "map?bbox={}".format(bounds.as_left_bottom_right_top())
        try:
            self._get(path, handler)
        except BadInputError as e:
            # All other parameters are checked already.
            raise QueryTooLargeError(e.reason, e.payload, e.http_reason, e.http_status) from e
        return handler

    def get_element(self, type_, id_, version=None):
        """
        Download node/way/relation by id and optionally version.

        Return element wrapper or None if it does not exist.

        Arguments:
            type_       --- Element type (node/way/relation).
            id_         --- Element id.

        Keyworded arguments:
            version     --- Element version number or None (latest).

        """
        self._check_type(type_)
        path = "{}/{}".format(type_, id_)
        if isinstance(version, int) and not isinstance(version, bool):
            path += "/{}".format(version)
        elif version is not None:
            raise TypeError("Version must be integer or None.")
        handler = SingleElementHandler()
        try:
            self._get(path, handler)
        except NotFoundError:
            return None
        return handler.element

    def get_node(self, id_, version=None):
        return self.get_element("node", id_, version=version)

    def get_way(self, id_, version=None):
        return self.get_element("way", id_, version=version)

    def get_relation(self, id_, version=None):
        return self.get_element("relation", id_, version=version)

    def get_element_full(self, type_, id_, handler=None):
        """
        Download way/relation by id and all elements it references.

        For a way these are its nodes, for a relation its members and the
        nodes of its member ways. Raise NotFoundError if it does not exist.

        Return the handler, OSM wrapper if none was given.

        Arguments:
            type_       --- Element type (way/relation).
            id_         --- Element id.

        Keyworded arguments:
            handler     --- ElementHandler.

        """
        self._check_type(type_, ("way", "relation"))
        if handler is None:
            handler = OSM()
        self._get("{}/{}/full".format(type_, id_), handler)
        return handler

    def get_way_full(self, id_, handler=None):
        return self.get_element_full("way", id_, handler)

    def get_relation_full(self, id_, handler=None):
        return self.get_element_full("relation", id_, handler)

    def get_elements(self, type_, ids):
        """
        Download nodes/ways/relations by ids.

        All or nothing: raise NotFoundError if any of them does not exist.
        None values among ids are skipped.

        Return list of element wrappers.

        Arguments:
            type_       --- Elements type (node/way/relation).
            ids         --- Iterable with ids.

        """
        self._check_type(type_)
        ids = [str(id_) for id_ in ids if id_ is not None]
        if not ids:
            return []
        handler = ListElementHandler()
        self._get("{0}s?{0}s={1}".format(type_, ",".join(ids)), handler)
        return handler.elements

    def get_nodes(self, ids):
        return self.get_elements("node", ids)

    def get_ways(self, ids):
        return self.get_elements("way", ids)

    def get_relations(self, ids):
        return self.get_elements("relation", ids)

    def get_element_rels(self, type_, id_):
        """
        Download relations that reference the node/way/relation by id.

        Return list of Relation wrappers, empty if there are none.

        """
        self._check_type(type_)
        handler = ListElementHandler()
        self._get("{}/{}/relations".format(type_, self._element_id(id_)), handler)
        return handler.elements

    def get_node_rels(self, element):
        return self.get_element_rels("node", element)

    def get_way_rels(self, element):
        return self.get_element_rels("way", element)

    def get_relation_rels(self, element):
        return self.get_element_rels("relation", element)

    def get_rels(self, element):
        """ Download relations that reference the Node/Way/Relation wrapper. """
        if not isinstance(element, OSMPrimitive):
            raise TypeError("Element must be a Node, Way or Relation instance.")
        return self.get_element_rels(element.xml_tag, element.id)

    def get_node_ways(self, element):
        """
        Download ways that reference the node by id or wrapper.

        Return list of Way wrappers, empty if there are none.

        """
        handler = ListElementHandler()
        self._get("node/{}/ways".format(self._element_id(element)), handler)
        return handler.elements

    def get_changeset_full(self, id_, handler=None):
        """
        Download changeset contents by id.

        Return the handler, OSC wrapper if none was given.

        Arguments:
            id_         --- Changeset id.

        Keyworded arguments:
            handler     --- ChangesHandler.

        """
        if handler is None:
            handler = OSC()
        path = "changeset/{}/download".format(id_)
        self.connection.request(path, reader=ChangesParser(handler, self.factory))
        return handler


############################################################
### Parsers.                                             ###
############################################################

class XMLParser:
    """
    Base of single-pass parsers driven by start/end tag events.

    The stream is read in chunks and every chunk is decoded right away, so
    events arrive while the rest of the document is still being downloaded.
    Elements of the tree are detached and cleared as soon as their closing
    tag is seen.

    Class attributes:
        chunk_size      --- Number of bytes read from the stream at once.

    Attributes:
        parent          --- Name of the tag enclosing the current one.

    Methods:
        parse           --- Read and decode the whole stream.
        start_element   --- Called for each opening tag.
        end_element     --- Called for each closing tag.
        attribute       --- Get converted attribute value.

    """

    chunk_size = 8192

    def __init__(self):
        self._path = []
        self._elements = []

    @property
    def parent(self):
        if len(self._path) < 2:
            return None
        return self._path[-2]

    def parse(self, fp):
        """
        Read and decode the whole stream.

        Raise MalformedResponseError on invalid XML, APIError when reading
        from the stream fails.

        Arguments:
            fp          --- Binary file object.

        """
        self._path = []
        self._elements = []
        parser = ET.XMLPullParser(events=("start", "end"))
        try:
            while True:
                data = self._read(fp)
                if not data:
                    if getattr(fp, "closed", False):
                        raise APIError("Reading of the response failed: stream was closed.")
                    break
                parser.feed(data)
                self._dispatch(parser.read_events())
            parser.close()
            self._dispatch(parser.read_events())
        except ET.ParseError as e:
            raise MalformedResponseError("Invalid XML: {}".format(e)) from e

    def _read(self, fp):
        try:
            return fp.read(self.chunk_size)
        except (OSError, ValueError, HTTPException) as e:
            raise APIError("Reading of the response failed: {}".format(e)) from e

    def _dispatch(self, events):
        for event, element in events:
            if event == "start":
                self._path.append(element.tag)
                self._elements.append(element)
                self.start_element(element.tag, element.attrib)
            else:
                self.end_element(element.tag)
                self._path.pop()
                self._elements.pop()
                # Detach from the parent, the tree builder keeps it otherwise.
                if self._elements:
                    self._elements[-1].remove(element)
                element.clear()

    def start_element(self, name, attribs):
        pass

    def end_element(self, name):
        pass

    def attribute(self, attribs, key, convert=str, required=True):
        """
        Get converted attribute value.

        Raise MalformedResponseError if a required attribute is missing or
        the value cannot be converted. Missing optional attribute is None.

        """
        value = attribs.get(key)
        if value is None:
            if required:
                raise MalformedResponseError("Missing attribute {!r} of <{}>.".format(key, self._path[-1]))
            return None
        try:
            return convert(value)
        except ValueError:
            raise MalformedResponseError("Invalid attribute {}={!r} of <{}>.".format(key, value, self._path[-1])) from None


class ElementParser(XMLParser):
    """
    Streaming parser of OSM XML documents.

    Every node, way and relation is created by the factory and passed to
    handler.handle() right after its closing tag. Bounds of the document are
    passed to handler.handle_bounds().

    Arguments:
        handler     --- ElementHandler.

    Keyworded arguments:
        factory     --- ElementFactory, default one if None.

    """

    def __init__(self, handler, factory=None):
        XMLParser.__init__(self)
        if factory is None:
            factory = ElementFactory()
        self.handler = handler
        self.factory = factory
        self._type = None

    def parse(self, fp):
        self._type = None
        XMLParser.parse(self, fp)

    def start_element(self, name, attribs):
        if name in ELEMENT_TYPES:
            if self._type is not None:
                raise MalformedResponseError("Unexpected <{}> inside <{}>.".format(name, self._type))
            self._type = name
            self._attribs = self._parse_attribs(attribs)
            self._tags = {}
            self._nds = []
            self._members = []
        elif self._type is not None:
            if self.parent != self._type:
                raise MalformedResponseError("Unexpected <{}> inside <{}>.".format(name, self.parent))
            if name == "tag":
                self._tags[self.attribute(attribs, "k")] = self.attribute(attribs, "v")
            elif name == "nd" and self._type == "way":
                self._nds.append(self.attribute(attribs, "ref", int))
            elif name == "member" and self._type == "relation":
                self._members.append(self._parse_member(attribs))
            else:
                raise MalformedResponseError("Unexpected <{}> inside <{}>.".format(name, self._type))
        elif name == "bounds":
            self.bounds(BoundingBox(self.attribute(attribs, "minlat", float),
                                    self.attribute(attribs, "minlon", float),
                                    self.attribute(attribs, "maxlat", float),
                                    self.attribute(attribs, "maxlon", float)))

    def end_element(self, name):
        if name == self._type:
            element = self._create()
            self._type = None
            self.emit(element)

    def _parse_attribs(self, attribs):
        try:
            attribs = XMLElement.parse_attribs(attribs)
        except ValueError as e:
            raise MalformedResponseError("Invalid attribute of <{}>: {}".format(self._type, e)) from e
        if "id" not in attribs:
            raise MalformedResponseError("Missing attribute 'id' of <{}>.".format(self._type))
        return attribs

    def _parse_member(self, attribs):
        type_ = self.attribute(attribs, "type")
        if type_ not in ELEMENT_TYPES:
            raise MalformedResponseError("Unknown member type {!r}.".format(type_))
        role = self.attribute(attribs, "role", required=False)
        return Member(type_, self.attribute(attribs, "ref", int), role or "")

    def _create(self):
        if self._type == "node":
            return self.factory.create_node(self._attribs, self._tags)
        elif self._type == "way":
            return self.factory.create_way(self._attribs, self._tags, self._nds)
        return self.factory.create_relation(self._attribs, self._tags, self._members)

    def emit(self, element):
        self.handler.handle(element)

    def bounds(self, bounds):
        handle_bounds = getattr(self.handler, "handle_bounds", None)
        if handle_bounds is not None:
            handle_bounds(bounds)


class ChangesParser(ElementParser):
    """
    Streaming parser of OSC XML documents.

    Elements are parsed the same way as by ElementParser and passed to
    handle_create(), handle_modify() or handle_delete() of the handler
    according to the section they are in.

    Arguments:
        handler     --- ChangesHandler.

    Keyworded arguments:
        factory     --- ElementFactory, default one if None.

    """

    def parse(self, fp):
        self._action = None
        ElementParser.parse(self, fp)

    def start_element(self, name, attribs):
        if name in CHANGE_ACTIONS and self._type is None:
            self._action = name
        else:
            ElementParser.start_element(self, name, attribs)

    def end_element(self, name):
        if name == self._action and self._type is None:
            self._action = None
        else:
            ElementParser.end_element(self, name)

    def emit(self, element):
        if self._action is None:
            raise MalformedResponseError("Element outside of create, modify or delete section.")
        getattr(self.handler, "handle_" + self._action)(element)

    def bounds(self, bounds):
        pass


class DiffParser(XMLParser):
    """
    Streaming parser of diff upload results.

    Arguments:
        handler     --- DiffHandler receiving DiffEntry for each uploaded element.

    """

    def __init__(self, handler):
        XMLParser.__init__(self)
        self.handler = handler

    def start_element(self, name, attribs):
        if name in ELEMENT_TYPES:
            self.handler.handle(DiffEntry(name,
                                          self.attribute(attribs, "old_id", int),
                                          self.attribute(attribs, "new_id", int, required=False),
                                          self.attribute(attribs, "new_version", int, required=False)))


class IdParser:
    """ Reader of plain text responses containing a single id. """

    def parse(self, fp):
        try:
            body = fp.read()
        except (OSError, ValueError, HTTPException) as e:
            raise APIError("Reading of the response failed: {}".format(e)) from e
        body = body.decode("utf-8", "replace").strip()
        try:
            return int(body)
        except ValueError:
            raise MalformedResponseError("Expected numeric id, got {!r}.".format(body[:100])) from None


############################################################
### Handlers.                                            ###
############################################################

class ElementHandler(metaclass=ABCMeta):
    """
    Receives elements parsed from OSM XML documents.

    Abstract methods:
        handle          --- Process one Node/Way/Relation.

    Methods:
        handle_bounds   --- Process bounds of the document, ignored by default.

    """

    @abstractmethod
    def handle(self, element):
        raise NotImplementedError

    def handle_bounds(self, bounds):
        pass


class SingleElementHandler(ElementHandler):
    """
    Keep the first element, optionally only an instance of cls.

    Attributes:
        element     --- The element or None.

    """

    def __init__(self, cls=None):
        self.cls = cls
        self.element = None

    def handle(self, element):
        if self.element is None and (self.cls is None or isinstance(element, self.cls)):
            self.element = element


class ListElementHandler(ElementHandler):
    """
    Collect all elements in the order they arrive, optionally only instances of cls.

    Attributes:
        elements    --- List of elements.

    """

    def __init__(self, cls=None):
        self.cls = cls
        self.elements = []

    def handle(self, element):
        if self.cls is None or isinstance(element, self.cls):
            self.elements.append(element)


class ChangesHandler(metaclass=ABCMeta):
    """
    Receives elements parsed from OSC XML documents.

    Abstract methods:
        handle_create   --- Process element from create section.
        handle_modify   --- Process element from modify section.
        handle_delete   --- Process element from delete section.

    """

    @abstractmethod
    def handle_create(self, element):
        raise NotImplementedError

    @abstractmethod
    def handle_modify(self, element):
        raise NotImplementedError

    @abstractmethod
    def handle_delete(self, element):
        raise NotImplementedError


DiffEntry = namedtuple("DiffEntry", ("type", "old_id", "new_id", "new_version"))
DiffEntry.__doc__ = """
Result of upload of one element.

new_id and new_version are None for deleted elements.
"""


class DiffHandler(metaclass=ABCMeta):
    """ Receives DiffEntry for each uploaded element. """

    @abstractmethod
    def handle(self, entry):
        raise NotImplementedError


class DiffCollector(DiffHandler):
    """
    Collect diff entries.

    Attributes:
        entries     --- List of DiffEntry in the order of the response.

    Methods:
        get         --- Retrieve DiffEntry by element type and old id or None.

    """

    def __init__(self):
        self.entries = []
        self._index = {}

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def handle(self, entry):
        self.entries.append(entry)
        self._index[(entry.type, entry.old_id)] = entry

    def get(self, type_, old_id):
        return self._index.get((type_, old_id))


class ElementUpdater(DiffHandler):
    """
    Write the ids and versions assigned by the server back into uploaded elements.

    References to placeholder ids in way nodes and relation members are
    replaced with the new ids as well. Updated elements get the id of the
    changeset, MapDataAPI.upload_diff() fills it in when it is not given.

    Arguments:
        elements    --- Iterable of uploaded Node/Way/Relation wrappers.

    Keyworded arguments:
        changeset   --- Id of the changeset the elements are uploaded into.

    """

    log = logging.getLogger("osmsync.api")

    def __init__(self, elements, changeset=None):
        self.changeset = changeset
        self.elements = {}
        self._references = {}
        for element in elements:
            self.elements[(element.xml_tag, element.id)] = element
            if isinstance(element, Way):
                for index, ref in enumerate(element.nds):
                    if ref < 0:
                        self._references.setdefault(("node", ref), []).append((element, index))
            elif isinstance(element, Relation):
                for index, member in enumerate(element.members):
                    if member.ref < 0:
                        self._references.setdefault((member.type, member.ref), []).append((element, index))

    def handle(self, entry):
        element = self.elements.get((entry.type, entry.old_id))
        if element is None:
            self.log.warning("Got diff result for unknown {} {}.".format(entry.type, entry.old_id))
            return
        if self.changeset is not None:
            element.attribs["changeset"] = self.changeset
        if entry.new_id is None:
            element.attribs["visible"] = False
            return
        element.attribs["id"] = entry.new_id
        element.attribs["version"] = entry.new_version
        for parent, index in self._references.pop((entry.type, entry.old_id), ()):
            if isinstance(parent, Way):
                parent.nds[index] = entry.new_id
            else:
                parent.members[index] = parent.members[index]._replace(ref=entry.new_id)


############################################################
### Wrappers for OSM Elements and documents.             ###
############################################################

class BoundingBox(namedtuple("BoundingBox", ("min_lat", "min_lon", "max_lat", "max_lon"))):
    """
    Area given by its latitude and longitude bounds.

    Class methods:
        create                  --- Create BoundingBox, wrap longitudes into [-180, 180].

    Attributes:
        crosses_180th_meridian  --- True if the area spans over the 180th meridian.

    Methods:
        as_left_bottom_right_top    --- Format as "left,bottom,right,top".

    """

    __slots__ = ()

    @classmethod
    def create(cls, min_lat, min_lon, max_lat, max_lon):
        return cls(float(min_lat), _wrap_lon(min_lon), float(max_lat), _wrap_lon(max_lon))

    @property
    def crosses_180th_meridian(self):
        return self.min_lon > self.max_lon

    def as_left_bottom_right_top(self):
        return "{},{},{},{}".format(self.min_lon, self.min_lat, self.max_lon, self.max_lat)


def _wrap_lon(lon):
    lon = float(lon)
    if -180 <= lon <= 180:
        return lon
    return (lon + 180) % 360 - 180


class ElementFactory:
    """
    Creates element wrappers for the parsers.

    Replace it with any object having the same methods to get parsed data
    in your own representation.

    Methods:
        create_node         --- Create Node wrapper.
        create_way          --- Create Way wrapper.
        create_relation     --- Create Relation wrapper.

    """

    def create_node(self, attribs, tags):
        return Node(attribs, tags)

    def create_way(self, attribs, tags, nds):
        return Way(attribs, tags, nds)

    def create_relation(self, attribs, tags, members):
        return Relation(attribs, tags, members)


class XMLFile(metaclass=ABCMeta):
    """
    Abstract wrapper for XML documents.

    Abstract methods:
        parser          --- Get streaming parser filling the wrapper.

    Class methods:
        load            --- Load the wrapper from file.

    Methods:
        save            --- Save the wrapper into file.

    """

    @abstractmethod
    def parser(self, factory=None):
        """
        Get streaming parser filling the wrapper.

        Keyworded arguments:
            factory     --- ElementFactory.

        """
        raise NotImplementedError

    @classmethod
    def load(cls, filename, factory=None):
        """
        Load the wrapper from file.

        Arguments:
            filename        --- Filename from where to load the wrapper.

        """
        document = cls()
        with open(filename, "rb") as fp:
            document.parser(factory).parse(fp)
        return document

    def save(self, filename):
        """
        Save the wrapper into file.

        Arguments:
            filename        --- Filename where to save the wrapper.

        """
        with open(filename, "wb") as fp:
            self.write(fp, pretty=True)


class XMLElement(metaclass=ABCMeta):
    """
    Abstract wrapper for XML Elements.

    Abstract methods:
        to_xml          --- Get ET.Element representation of wrapper.

    Class methods:
        parse_attribs   --- Convert attributes of XML element to appropriate types.
        unparse_attribs --- Convert attribute values to strings, optionally
                            filtering out some attributes.

    Methods:
        write           --- Write XML document into binary file object.
        __str__         --- Return pretty formatted XML string.

    """

    @abstractmethod
    def to_xml(self, strip=()):
        """
        Get ET.Element representation of wrapper.

        Keyworded arguments:
            strip       --- Attributes that should be filtered out.

        """
        raise NotImplementedError

    @classmethod
    def parse_attribs(cls, attribs):
        """
        Convert attributes of XML element to appropriate types.

        Raise ValueError on invalid number.

        Arguments:
            attribs     --- Dictionary of string attributes.

        """
        attribs = dict(attribs)
        for key, value in attribs.items():
            if key in ("uid", "changeset", "version", "id", "ref"):
                attribs[key] = int(value)
            elif key in ("lat", "lon", "min_lon", "max_lon", "min_lat", "max_lat"):
                attribs[key] = float(value)
            elif key in ("open", "visible"):
                attribs[key] = value == "true"
        return attribs

    @classmethod
    def unparse_attribs(cls, data, strip=()):
        """
        Convert attribute values to strings, optionally filtering out some attributes.

        Arguments:
            data        --- Dictionary of attributes.

        Keyworded arguments:
            strip       --- Container of attribute names that should be filtered out
                            from the returned dictionary.

        """
        attribs = {}
        for key, value in data.items():
            if key in strip:
                continue
            if isinstance(value, bool):
                attribs[key] = str(value).lower()
            elif isinstance(value, (int, float)):
                attribs[key] = str(value)
            else:
                attribs[key] = value
        return attribs

    def _indent(self, element, level=0):
        indent = "\n" + level * "\t"
        if len(element) > 0:
            element.text = indent + "\t"
            element.tail = indent
            for child in element:
                self._indent(child, level+1)
            child.tail = indent
        elif level > 0:
            element.tail = indent

    def write(self, fp, pretty=False, **kwargs):
        """
        Write XML document into binary file object.

        Arguments:
            fp          --- Binary file object.

        Keyworded arguments:
            pretty      --- Indent the output.
            **kwargs    --- Passed to to_xml().

        """
        element = self.to_xml(**kwargs)
        if pretty:
            self._indent(element)
        ET.ElementTree(element).write(fp, encoding="utf-8", xml_declaration=True)

    def __str__(self):
        element = self.to_xml()
        self._indent(element)
        return ET.tostring(element, encoding="unicode")


class OSMElement(XMLElement):
    """
    Abstract wrapper for node, way, relation and changeset.

    Attributes:
        id          --- Id of wrapper, read-only.
        attribs     --- Attributes of wrapper.
        tags        --- Tags of wrapper.

    Methods:
        to_xml      --- Get ET.Element representation of wrapper.

    """

    @property
    def id(self):
        """ id of wrapper """
        return self.attribs.get("id")

    def __init__(self, attribs=None, tags=None):
        self.attribs = dict(attribs or {})
        self.tags = dict(tags or {})

    def to_xml(self, strip=()):
        attribs = self.unparse_attribs(self.attribs, strip=strip)
        element = ET.Element(self.xml_tag, attribs)
        for key in sorted(self.tags.keys()):
            ET.SubElement(element, "tag", {"k": key, "v": self.tags[key]})
        return element


class OSMPrimitive(OSMElement):
    """
    Abstract wrapper for node, way and relation.

    Wrappers created without id get a negative one, i.e. they are new and
    not known to the server yet.

    Attributes:
        version     --- Version of node/way/relation, read-only.
        changeset   --- Id of the changeset of the last change, read-only.
        visible     --- False for deleted node/way/relation.

    """

    _counter = 0

    def __init__(self, attribs=None, tags=None):
        OSMElement.__init__(self, attribs, tags)
        if self.id is None:
            # Automatically assign id
            self.__class__._counter -= 1
            self.attribs["id"] = self.__class__._counter

    @property
    def version(self):
        """ version of node/way/relation """
        return self.attribs.get("version")

    @property
    def changeset(self):
        return self.attribs.get("changeset")

    @property
    def visible(self):
        return self.attribs.get("visible", True)

    @visible.setter
    def visible(self, value):
        self.attribs["visible"] = bool(value)

    def to_xml(self, strip=(), changeset=None):
        """
        Get ET.Element representation of wrapper.

        Keyworded arguments:
            strip       --- Attributes that should be filtered out.
            changeset   --- Changeset id to set on the element.

        """
        element = OSMElement.to_xml(self, strip=strip)
        if changeset is not None:
            element.attrib["changeset"] = str(changeset)
        return element


class Node(OSMPrimitive):
    """
    Node wrapper.

    Class attributes:
        xml_tag     --- XML tag of the element.

    Attributes:
        lat         --- Latitude of the node, None for a tags only stub.
        lon         --- Longitude of the node, None for a tags only stub.

    """

    xml_tag = "node"
    _counter = 0

    @property
    def lat(self):
        return self.attribs.get("lat")

    @lat.setter
    def lat(self, value):
        self.attribs["lat"] = float(value)

    @property
    def lon(self):
        return self.attribs.get("lon")

    @lon.setter
    def lon(self, value):
        self.attribs["lon"] = float(value)

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return self.id == other.id and self.version == other.version and self.tags == other.tags and self.lat == other.lat and self.lon == other.lon

    def __repr__(self):
        return "<Node id={} version={}>".format(self.id, self.version)


class Way(OSMPrimitive):
    """
    Way wrapper.

    Implements methods for operators:
        Node in Way

    Class attributes:
        xml_tag     --- XML tag of the element.

    Attributes:
        nds         --- List of node ids of the way.

    """

    xml_tag = "way"
    _counter = 0

    def __init__(self, attribs=None, tags=None, nds=()):
        OSMPrimitive.__init__(self, attribs, tags)
        self.nds = list(nds)

    def __eq__(self, other):
        if not isinstance(other, Way):
            return NotImplemented
        return self.id == other.id and self.version == other.version and self.tags == other.tags and self.nds == other.nds

    def __contains__(self, item):
        if not isinstance(item, Node):
            raise NotImplementedError
        return item.id in self.nds

    def __repr__(self):
        return "<Way id={} version={}>".format(self.id, self.version)

    def to_xml(self, strip=(), changeset=None):
        element = OSMPrimitive.to_xml(self, strip=strip, changeset=changeset)
        for nd in self.nds:
            ET.SubElement(element, "nd", {"ref": str(nd)})
        return element


Member = namedtuple("Member", ("type", "ref", "role"))


class Relation(OSMPrimitive):
    """
    Relation wrapper.

    Implements methods for operators:
        Node in Relation, Way in Relation, Relation in Relation

    Class attributes:
        xml_tag         --- XML tag of the element.

    Attributes:
        members         --- List of Member tuples (type, ref, role).

    """

    xml_tag = "relation"
    _counter = 0

    def __init__(self, attribs=None, tags=None, members=()):
        OSMPrimitive.__init__(self, attribs, tags)
        self.members = [Member(*member) for member in members]

    def __eq__(self, other):
        if not isinstance(other, Relation):
            return NotImplemented
        return self.id == other.id and self.version == other.version and self.tags == other.tags and self.members == other.members

    def __contains__(self, item):
        if not isinstance(item, OSMPrimitive):
            raise NotImplementedError
        for member in self.members:
            if member.type == item.xml_tag and member.ref == item.id:
                return True
        return False

    def __repr__(self):
        return "<Relation id={} version={}>".format(self.id, self.version)

    def to_xml(self, strip=(), changeset=None):
        element = OSMPrimitive.to_xml(self, strip=strip, changeset=changeset)
        for member in self.members:
            ET.SubElement(element, "member", {"type": member.type, "ref": str(member.ref), "role": member.role})
        return element


class Changeset(OSMElement):
    """
    Changeset wrapper.

    Class attributes:
        xml_tag         --- XML tag of the element.

    Attributes:
        open            --- True while the changeset accepts uploads.

    Methods:
        write           --- Write <osm> document with the changeset, as
                            expected by changeset/create.

    """

    xml_tag = "changeset"

    @property
    def open(self):
        return self.attribs.get("open", False)

    def write(self, fp, pretty=False, **kwargs):
        element = ET.Element("osm")
        element.append(self.to_xml(**kwargs))
        if pretty:
            self._indent(element)
        ET.ElementTree(element).write(fp, encoding="utf-8", xml_declaration=True)


class OSM(XMLElement, XMLFile, ElementHandler, MutableSet):
    """
    OSM XML document wrapper. Essentially a mutable set of Node, Way, Relation wrappers.

    As ElementHandler it collects everything a parser emits.

    Attributes:
        nodes       --- Dictionary of nodes {nodeId: Node}.
        ways        --- Dictionary of ways {wayId: Way}.
        relations   --- Dictionary of relations {relationId: Relation}.
        bounds      --- BoundingBox of the document or None.

    Methods:
        to_xml      --- Get ET.Element representation of wrapper.
        parser      --- Get ElementParser filling the wrapper.
        node        --- Retrieve Node wrapper by id or None.
        way         --- Retrieve Way wrapper by id or None.
        relation    --- Retrieve Relation wrapper by id or None.

    """

    def __init__(self, items=()):
        self.nodes = {}
        self.ways = {}
        self.relations = {}
        self.bounds = None
        for item in items:
            self.add(item)

    def __len__(self):
        return len(self.nodes) + len(self.ways) + len(self.relations)

    def __iter__(self):
        return chain(self.nodes.values(), self.ways.values(), self.relations.values())

    def _container(self, item):
        for container, cls in ((self.nodes, Node), (self.ways, Way), (self.relations, Relation)):
            if isinstance(item, cls):
                return container
        return None

    def __contains__(self, item):
        container = self._container(item)
        if container is None:
            return False
        return container.get(item.id) == item

    def add(self, item):
        container = self._container(item)
        if container is None:
            raise ValueError("Only Node, Way, Relation instances are allowed.")
        container[item.id] = item

    def discard(self, item):
        container = self._container(item)
        if container is None:
            raise ValueError("Only Node, Way, Relation instances are allowed.")
        container.pop(item.id, None)

    def handle(self, element):
        self.add(element)

    def handle_bounds(self, bounds):
        self.bounds = bounds

    def parser(self, factory=None):
        return ElementParser(self, factory)

    def to_xml(self, strip=()):
        element = ET.Element("osm", {"version": API_VERSION, "generator": "osmsync"})
        if self.bounds is not None:
            ET.SubElement(element, "bounds", {"minlat": str(self.bounds.min_lat),
                                              "minlon": str(self.bounds.min_lon),
                                              "maxlat": str(self.bounds.max_lat),
                                              "maxlon": str(self.bounds.max_lon)})
        for child in self:
            element.append(child.to_xml(strip=strip))
        return element

    def node(self, id_):
        return self.nodes.get(id_)

    def way(self, id_):
        return self.ways.get(id_)

    def relation(self, id_):
        return self.relations.get(id_)


class OSC(XMLElement, XMLFile, ChangesHandler):
    """
    OSC XML document wrapper.

    As ChangesHandler it collects everything a ChangesParser emits.

    Class methods:
        from_elements   --- Create OSC wrapper with elements sorted into sections.

    Attributes:
        sections        --- List of tuples (action, [elements]), where action is
                            one of create, modify, delete.
        creations       --- List of all elements to create.
        modifications   --- List of all elements to modify.
        deletions       --- List of all elements to delete.
        all             --- List of all elements.

    Methods:
        to_xml      --- Get ET.Element representation of wrapper.
        parser      --- Get ChangesParser filling the wrapper.
        add         --- Add element to create, modify or delete section.
        create      --- Add new create section (unless the last one is create)
                        and add to it the specified element.
        modify      --- Add new modify section (unless the last one is modify)
                        and add to it the specified element.
        delete      --- Add new delete section (unless the last one is delete)
                        and add to it the specified element.

    """

    @classmethod
    def from_elements(cls, elements):
        """
        Create OSC wrapper with elements sorted into sections by add().

        Arguments:
            elements    --- Iterable of Node/Way/Relation wrappers.

        """
        osc = cls()
        for element in elements:
            osc.add(element)
        return osc

    def __init__(self, *sections):
        """
        Arguments:
            *sections   --- Arbitrary number of tuples (action, elements).

        """
        self.sections = []
        for section in sections:
            action, elements = tuple(section)
            if action not in CHANGE_ACTIONS:
                raise ValueError("Unexpected action {!r}.".format(action))
            self.sections.append((action, list(elements)))

    def __len__(self):
        return sum(len(elements) for _, elements in self.sections)

    def _elements(self, action):
        return [element for section, elements in self.sections if section == action for element in elements]

    @property
    def creations(self):
        return self._elements("create")

    @property
    def modifications(self):
        return self._elements("modify")

    @property
    def deletions(self):
        return self._elements("delete")

    @property
    def all(self):
        return list(chain.from_iterable(elements for _, elements in self.sections))

    def _append(self, action, element):
        if not isinstance(element, OSMPrimitive):
            raise ValueError("Only Node, Way, Relation instances are allowed.")
        if len(self.sections) == 0 or self.sections[-1][0] != action:
            self.sections.append((action, []))
        self.sections[-1][1].append(element)

    def add(self, element):
        """
        Add element to delete section if it is not visible, to create
        section if its id is negative, otherwise to modify section.

        """
        if not isinstance(element, OSMPrimitive):
            raise ValueError("Only Node, Way, Relation instances are allowed.")
        if not element.visible:
            self.delete(element)
        elif element.id < 0:
            self.create(element)
        else:
            self.modify(element)

    def create(self, element):
        self._append("create", element)

    def modify(self, element):
        self._append("modify", element)

    def delete(self, element):
        self._append("delete", element)

    def handle_create(self, element):
        self.create(element)

    def handle_modify(self, element):
        self.modify(element)

    def handle_delete(self, element):
        self.delete(element)

    def parser(self, factory=None):
        return ChangesParser(self, factory)

    def to_xml(self, strip=(), changeset=None):
        """
        Get ET.Element representation of wrapper.

        Keyworded arguments:
            strip       --- Attributes that should be filtered out.
            changeset   --- Changeset id to set on all elements.

        """
        element = ET.Element("osmChange", {"version": API_VERSION, "generator": "osmsync"})
        for action, elements in self.sections:
            if len(elements) == 0:
                continue
            section = ET.SubElement(element, action)
            for child in elements:
                section.append(child.to_xml(strip=strip, changeset=changeset))
        return element



############################################################
### Exceptions.                                          ###
############################################################

class APIError(Exception):
    """
    OSM API exception.

    Attributes:
        reason      --- The reason of failure.
        payload     --- Data sent to API with request.
        http_reason --- Reason phrase of HTTP error or None.
        http_status --- Status code of HTTP error or None.

    """

    def __init__(self, reason, payload=None, http_reason=None, http_status=None):
        Exception.__init__(self, reason)
        self.reason = reason
        self.payload = payload
        self.http_reason = http_reason
        self.http_status = http_status

    def __str__(self):
        if None in (self.http_reason, self.http_status):
            msg = "Request failed: {}".format(self.reason)
        else:
            msg = "HTTP error {} ({}).".format(self.http_status, self.http_reason)
            if len(self.reason) > 0:
                msg += " " + self.reason
        return msg


class UnauthorizedError(APIError):
    """ Missing credentials or permission for the request. """


class NotFoundError(APIError):
    """ Requested element(s) do not exist or were deleted. """


class BadInputError(APIError):
    """ The server refused the request as invalid. """


class QueryTooLargeError(BadInputError):
    """ Requested area contains too much data. """


class ConflictError(APIError):
    """ Changeset is closed or uploaded version does not match. """


class PreconditionFailedError(APIError):
    """ Element is still used by other elements or references missing ones. """


class ServiceUnavailableError(APIError):
    pass


class MalformedResponseError(APIError):
    """ Response document could not be decoded. """


_status_errors = {400: BadInputError,
                  401: UnauthorizedError,
                  403: UnauthorizedError,
                  404: NotFoundError,
                  409: ConflictError,
                  410: NotFoundError,
                  412: PreconditionFailedError}


def error_for_status(status, reason, payload=None, http_reason=None):
    """ Create APIError subclass instance matching HTTP status code. """
    cls = _status_errors.get(status)
    if cls is None:
        cls = ServiceUnavailableError if 500 <= status < 600 else APIError
    return cls(reason, payload, http_reason, status)
