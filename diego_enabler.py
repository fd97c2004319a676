# Copyright 2020 Philips HSDP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import re
import os
import sys
import json
import logging
import argparse
import requests
from base64 import urlsafe_b64decode
from collections import namedtuple
from urllib.parse import urlencode, urlsplit, urlunsplit


api_version = 'v2'

default_params = {'results-per-page': 100}
"""Query parameters appended to the first page request of every listing"""


logger = logging.getLogger('diego_enabler')
logger.setLevel(logging.WARNING)
formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
ch = logging.StreamHandler()
ch.setFormatter(formatter)
logger.addHandler(ch)


class DiegoEnablerException(Exception):
    """Base class of all exceptions raised by this module"""
    pass


class ConfigException(DiegoEnablerException):
    config = None

    def __init__(self, msg, config=None):
        super(ConfigException, self).__init__(msg)
        self.config = config


class AuthenticationError(DiegoEnablerException):
    """Indicates that there is no logged in cf session"""
    pass


class TransportError(DiegoEnablerException):
    """Indicates that an HTTP call failed or returned a non-2xx status"""

    response = None
    output = ()

    def __init__(self, msg, response=None, output=()):
        super(TransportError, self).__init__(msg)
        self.response = response
        self.output = list(output)


class DecodeError(DiegoEnablerException):
    """Indicates that a response body is not a valid page of resources"""
    pass


class NotFoundError(DiegoEnablerException):
    pass


class DivergenceError(DiegoEnablerException):
    """Indicates that the Diego flag read back after a write does not match
    the value that was requested"""

    app = None
    expected = None

    def __init__(self, msg, app=None, expected=None):
        super(DivergenceError, self).__init__(msg)
        self.app = app
        self.expected = expected


def jwt_decode(jwt):
    """Decodes the payload of a UAA access token, with or without its
    ``bearer`` prefix. The signature is NOT verified.

    Args:
        jwt (str): JWT token string

    Returns:
        dict: A dictionary of the token's attributes"""
    jwt = re.sub(r'^bearer\s+', '', jwt or '', flags=re.IGNORECASE)
    parts = jwt.split('.', 2)
    if len(parts) != 3:
        raise AuthenticationError('Access token is invalid.')
    try:
        # add extra padding (==) to avoid b64decode errors
        data = urlsafe_b64decode(parts[1] + '==').decode('utf-8')
        data = json.loads(data)
    except ValueError as e:
        raise AuthenticationError('Access token is invalid: {}'.format(e))
    if not isinstance(data, dict):
        raise AuthenticationError('Access token payload is not an object.')
    return data


def format_bool(value):
    return 'true' if value else 'false'


class Resource(object):
    """Resource wraps a single v2 API object of the form
    ``{"metadata": {"guid": ...}, "entity": {...}}``"""

    data = None

    def __init__(self, data):
        self.data = data

    def __repr__(self):
        return '\t'.join([str(self.guid), str(self.name)])

    def __eq__(self, other):
        return isinstance(other, Resource) and self.data == other.data

    def __hash__(self):
        return hash(self.guid)

    @property
    def metadata(self):
        return self.data.get('metadata') or {}

    @property
    def entity(self):
        return self.data.get('entity') or {}

    @property
    def guid(self):
        return self.metadata.get('guid') or ''

    @property
    def name(self):
        return self.entity.get('name') or ''


class Application(Resource):

    @classmethod
    def not_found(cls, name):
        """An application with an empty identity"""
        return cls({'metadata': {'guid': ''}, 'entity': {'name': name}})

    @property
    def space_guid(self):
        return self.entity.get('space_guid') or ''

    @property
    def diego(self):
        return self.entity.get('diego') is True


class Space(Resource):

    @property
    def organization_guid(self):
        return self.entity.get('organization_guid') or ''

    @property
    def organization_name(self):
        """Name of the organization when the API inlined it, else ''"""
        org = self.entity.get('organization')
        if not isinstance(org, dict) or not isinstance(org.get('entity'), dict):
            return ''
        return org['entity'].get('name') or ''


class Organization(Resource):
    pass


class Response(object):
    """Response wraps a requests.Response providing error checks and lazy
    JSON decoding of the body"""

    response = None
    """Holds underlying requests.Response object"""

    def __init__(self, response):
        self.response = response
        self._data = None

    @property
    def ok(self):
        """Indicates whether the response was successful"""
        return 200 <= self.response.status_code < 300

    @property
    def data(self):
        if self._data is None:
            try:
                self._data = json.loads(self.response.content)
            except ValueError as e:
                raise DecodeError('Unable to decode response from {}: {}'
                                  .format(self.response.url, e))
        return self._data

    @property
    def output(self):
        return self.response.text.splitlines()

    def assert_ok(self):
        if not self.ok:
            try:
                data = json.loads(self.response.content)
            except ValueError:
                data = None
            if isinstance(data, dict) and 'error_code' in data:
                msg = data['error_code']
            else:
                msg = self.response.reason
            msg = 'HTTP {} {}'.format(self.response.status_code, msg)
            msg = 'An API error occurred: {}.'.format(msg)
            raise TransportError(msg, self, self.output)
        return self


class Request(object):
    """Request describes a single v2 API call: HTTP method, URL, headers and
    body. It does nothing until ``send()`` is invoked."""

    method = 'GET'

    body = None
    """Indicates the HTTP body; must be bytes encoded"""

    url = None
    """Indicates the HTTP endpoint to request; use ``set_url()`` to control
    this value"""

    def __init__(self, api_endpoint, *path, **query):
        self.api_endpoint = api_endpoint
        self.headers = {'Accept': 'application/json'}
        self.set_url(*path, **query)

    def set_url(self, *path, **query):
        """Sets the URL path and query string for this request. The path
        argument(s) will be
            1) joined with ``/``
            2) stripped of any leading ``scheme://hostname/v\\d+`` prefix
            3) joined with the API endpoint and version
            4) have the query string set to ``**query``, or kept from the path
               when no query is specified

        This lets a ``next_url`` such as ``/v2/apps?page=2`` be used as is.

        Args:
            *path: a list of string URL segments
            **query: key value pairs that should be encoded into the URL string

        Returns:
            Request"""
        cursor = urlsplit('/'.join(list(path)))
        path = re.sub(r'^/?(v\d+/)?', '', cursor.path)
        parts = list(urlsplit(self.api_endpoint))
        parts[2] = '/'.join([re.sub('/$', '', parts[2]), api_version, path])
        parts[3] = urlencode(query, doseq=True) if query else cursor.query
        parts[4] = ''
        self.url = urlunsplit(parts)
        return self

    def set_body(self, body):
        """Sets the HTTP body to the JSON encoding of the dict named body."""
        self.body = json.dumps(body).encode('utf-8')
        self.headers['Content-Type'] = 'application/json'
        return self

    def send(self, verify=True):
        """Sends this request with its HTTP method.

        Args:
            verify (bool): indicates to verify the server's TLS certificate

        Returns:
            Response"""
        logger.debug('%s %s', self.method, self.url)
        try:
            res = requests.request(self.method, self.url, data=self.body,
                                   headers=self.headers, verify=verify)
        except requests.exceptions.RequestException as e:
            raise TransportError('Error requesting {} {}: {}'
                                 .format(self.method, self.url, e))
        logger.debug('%s %s -> %s', self.method, self.url, res.status_code)
        return Response(res)

    def get(self, verify=True):
        """A shortcut that sends this request using HTTP GET method"""
        self.method = 'GET'
        return self.send(verify)

    def put(self, verify=True):
        """A shortcut that sends this request using HTTP PUT method"""
        self.method = 'PUT'
        return self.send(verify)


class CollectionRequestFactory(object):
    """Builds requests listing one API collection.

    The first page request carries the ``q`` filters and ``params``; later
    requests follow the ``next_url`` cursor returned by the API, which
    already encodes them."""

    def __init__(self, api_endpoint, collection, filters=(), params=None):
        self.api_endpoint = api_endpoint
        self.collection = collection
        self.filters = list(filters)
        self.params = dict(default_params if params is None else params)

    def build(self, cursor=None):
        if cursor is not None:
            return Request(self.api_endpoint, cursor)
        query = {}
        if self.filters:
            query['q'] = list(self.filters)
        query.update(self.params)
        return Request(self.api_endpoint, self.collection, **query)


class ResourceRequestFactory(object):
    """Builds a request addressing a single resource by guid"""

    def __init__(self, api_endpoint, collection, guid, method='GET',
                 body=None):
        self.api_endpoint = api_endpoint
        self.collection = collection
        self.guid = guid
        self.method = method
        self.body = body

    def build(self, cursor=None):
        req = Request(self.api_endpoint, self.collection, self.guid)
        req.method = self.method
        if self.body is not None:
            req.set_body(self.body)
        return req


class AuthorizedRequestFactory(object):
    """Wraps a request factory, setting the bearer token on each request it
    builds. The token is captured once when the wrapper is created."""

    def __init__(self, factory, access_token):
        if not access_token:
            raise AuthenticationError('You must be logged in')
        if not access_token.lower().startswith('bearer '):
            access_token = 'bearer ' + access_token
        self.factory = factory
        self.authorization = access_token

    def build(self, cursor=None):
        req = self.factory.build(cursor)
        req.headers['Authorization'] = self.authorization
        return req


def apps_request_factory(api_endpoint, diego):
    return CollectionRequestFactory(
        api_endpoint, 'apps', ['diego:' + format_bool(diego)])


def spaces_request_factory(api_endpoint):
    return CollectionRequestFactory(api_endpoint, 'spaces')


def organizations_request_factory(api_endpoint):
    return CollectionRequestFactory(api_endpoint, 'organizations')


def parse_page(data, resource_class):
    """Decodes one page of a v2 listing.

    Args:
        data (dict): the JSON decoded response body
        resource_class (type): Resource subclass wrapping each item

    Returns:
        tuple[list, str]: the wrapped resources in page order and the
            ``next_url`` cursor, or None on the last page"""
    if not isinstance(data, dict) or \
            not isinstance(data.get('resources'), list):
        raise DecodeError('Page does not contain a list of resources.')
    records = []
    for item in data['resources']:
        if not isinstance(item, dict) or \
                not isinstance(item.get('entity'), dict) or \
                not isinstance(item.get('metadata'), dict) or \
                not item['metadata'].get('guid'):
            raise DecodeError('Malformed resource: {!r}'.format(item))
        records.append(resource_class(item))
    next_url = data.get('next_url') or None
    if next_url is not None and not isinstance(next_url, str):
        raise DecodeError('Malformed next_url: {!r}'.format(next_url))
    return records, next_url


def parse_applications(data):
    return parse_page(data, Application)


def parse_spaces(data):
    return parse_page(data, Space)


def parse_organizations(data):
    return parse_page(data, Organization)


def get_all_resources(factory, parser, verify=True):
    """Gets all the pages of a collection. It builds the first request from
    the factory, then follows the ``next_url`` of each page until there are
    no more pages.

    Any failure aborts the listing; resources of the pages fetched so far are
    discarded.

    Args:
        factory: object with a ``build(cursor)`` method returning a Request
        parser (callable): decodes a page body into (resources, next_url)
        verify (bool): indicates to verify the server's TLS certificate

    Returns:
        list[Resource]"""
    resources = []
    cursor = None
    pages = 0
    while True:
        res = factory.build(cursor).get(verify).assert_ok()
        records, cursor = parser(res.data)
        pages += 1
        logger.debug('page %d: %d resources', pages, len(records))
        resources.extend(records)
        if cursor is None:
            break
    return resources


JoinedRow = namedtuple('JoinedRow', ['name', 'space', 'org'])


def space_display_for(app, spaces):
    space = spaces.get(app.space_guid)
    if space is None:
        return app.space_guid
    return space.name


def org_display_for(app, spaces, organizations=None):
    space = spaces.get(app.space_guid)
    if space is None:
        return ''
    if space.organization_name:
        return space.organization_name
    org = (organizations or {}).get(space.organization_guid)
    if org is not None and org.name:
        return org.name
    return space.organization_guid


def join_rows(apps, spaces, organizations=()):
    """Produces one JoinedRow per application, in application order, with
    the space and org names resolved where they are known.

    Unknown spaces are shown by guid with an empty org; an empty space list
    is treated the same way as missing ownership data."""
    space_map = dict((space.guid, space) for space in spaces)
    org_map = dict((org.guid, org) for org in organizations)
    return [JoinedRow(app.name,
                      space_display_for(app, space_map),
                      org_display_for(app, space_map, org_map))
            for app in apps]


def format_table(headers, rows):
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(str(c))) for w, c in zip(widths, row)]
    lines = []
    for row in [headers] + list(rows):
        cells = [str(c).ljust(w) for w, c in zip(widths, row)]
        lines.append('   '.join(cells).rstrip())
    return '\n'.join(lines)


def default_config_path():
    home = os.getenv('CF_HOME') or os.path.expanduser('~')
    return os.path.join(home, '.cf', 'config.json')


class Session(object):
    """Session exposes the login state that ``cf login`` stored in the cf
    CLI config file. Values set through environment variables take
    precedence over the file."""

    api_endpoint = os.getenv('CF_URL')
    """The API base url; read from environment var CF_URL, else ``Target``
    """

    access_token = os.getenv('CF_ACCESS_TOKEN')
    """The UAA access token; read from environment var CF_ACCESS_TOKEN, else
    ``AccessToken``
    """

    space_guid = os.getenv('CF_SPACE_GUID')
    """The targeted space; read from environment var CF_SPACE_GUID, else
    ``SpaceFields.GUID``
    """

    ssl_disabled = os.getenv('CF_SKIP_SSL_VALIDATION', 'false') == 'true'
    """Indicates to skip TLS certificate verification; also enabled by
    ``SSLDisabled``
    """

    def load(self, path=None):
        """Reads the cf CLI config file. A missing file leaves the session
        logged out.

        Returns:
            Session"""
        path = path or default_config_path()
        if not os.path.exists(path):
            logger.debug('cf config %s not found', path)
            return self
        try:
            with open(path) as f:
                data = json.load(f)
        except (IOError, ValueError) as e:
            raise ConfigException('Unable to read cf config {}: {}'
                                  .format(path, e), path)
        if not isinstance(data, dict):
            raise ConfigException('Invalid cf config {}.'.format(path), path)
        if not self.api_endpoint:
            self.api_endpoint = data.get('Target') or None
        if not self.access_token:
            self.access_token = data.get('AccessToken') or None
        if not self.space_guid:
            space = data.get('SpaceFields') or {}
            self.space_guid = space.get('GUID') or None
        if data.get('SSLDisabled') is True:
            self.ssl_disabled = True
        return self

    @property
    def verify(self):
        return not self.ssl_disabled

    def is_logged_in(self):
        return bool(self.api_endpoint and self.access_token)

    def assert_logged_in(self):
        if not self.is_logged_in():
            raise AuthenticationError('You must be logged in')

    def username(self):
        self.assert_logged_in()
        data = jwt_decode(self.access_token)
        return data.get('user_name') or data.get('client_id') or ''

    def authorize(self, factory):
        """Wraps factory so that its requests carry this session's token"""
        self.assert_logged_in()
        return AuthorizedRequestFactory(factory, self.access_token)

    def get_app(self, name):
        """Looks up an application by name in the targeted space.

        Returns:
            Application: with an empty guid when no app has this name"""
        self.assert_logged_in()
        if not self.space_guid:
            raise ConfigException('No space targeted, use \'cf target -s\'')
        filters = ['name:' + name, 'space_guid:' + self.space_guid]
        factory = self.authorize(CollectionRequestFactory(
            self.api_endpoint, 'apps', filters, params={}))
        res = factory.build().get(self.verify).assert_ok()
        apps, _ = parse_applications(res.data)
        if not apps:
            return Application.not_found(name)
        return apps[0]


class DiegoSupport(object):
    """Changes the Diego flag of an application and verifies, with a second
    read, that the change is visible.

    A successful PUT does not guarantee that the next read returns the new
    value, so the outcome is decided by the re-read only."""

    SETTING = 'setting'
    VERIFYING = 'verifying'
    CONVERGED = 'converged'
    DIVERGED = 'diverged'

    state = None

    def __init__(self, session):
        self.session = session

    def _transition(self, state, app_name):
        logger.debug('%s: %s', app_name, state)
        self.state = state

    def _get_app(self, app_name):
        app = self.session.get_app(app_name)
        if not app.guid:
            raise NotFoundError('App {} not found'.format(app_name))
        return app

    def set_diego_flag(self, app_guid, enabled):
        factory = self.session.authorize(ResourceRequestFactory(
            self.session.api_endpoint, 'apps', app_guid, 'PUT',
            {'diego': enabled}))
        return factory.build().send(self.session.verify).assert_ok()

    def set(self, app_name, enabled):
        self._transition(self.SETTING, app_name)
        app = self._get_app(app_name)
        self.set_diego_flag(app.guid, enabled)
        return app

    def verify(self, app_name, enabled):
        self._transition(self.VERIFYING, app_name)
        app = self._get_app(app_name)
        if app.diego == enabled:
            self._transition(self.CONVERGED, app_name)
            return app
        self._transition(self.DIVERGED, app_name)
        raise DivergenceError('Diego support for {} is NOT set to {}'
                              .format(app_name, format_bool(enabled)),
                              app, enabled)

    def toggle(self, app_name, enabled):
        self.set(app_name, enabled)
        return self.verify(app_name, enabled)

    def is_diego_enabled(self, app_name):
        return self._get_app(app_name).diego


def say(message, color, bold=1):
    return '\033[{};{}m{}\033[0m'.format(bold, color, message)


def say_ok():
    print(say('OK\n', 32))


def say_failed():
    print(say('FAILED', 31))


def exit_with_error(err, output=()):
    say_failed()
    print('Error: ', err)
    for line in output:
        print(line)
    return 1


def toggle_diego_support(session, args, enabled):
    support = DiegoSupport(session)
    print('Setting {} Diego support to {}'
          .format(args.app_name, format_bool(enabled)))
    support.set(args.app_name, enabled)
    say_ok()
    print('Verifying {} Diego support is set to {}'
          .format(args.app_name, format_bool(enabled)))
    support.verify(args.app_name, enabled)
    say_ok()


def show_apps(session, diego):
    session.assert_logged_in()
    runtime = 'Diego' if diego else 'DEA'
    try:
        username = session.username()
    except AuthenticationError as e:
        logger.debug('Unable to read the username from the token: %s', e)
        username = 'unknown user'
    print('Getting apps on the {} runtime as {}...'
          .format(runtime, say(username, 36)))
    endpoint = session.api_endpoint
    apps = get_all_resources(
        session.authorize(apps_request_factory(endpoint, diego)),
        parse_applications, session.verify)
    spaces = get_all_resources(
        session.authorize(spaces_request_factory(endpoint)),
        parse_spaces, session.verify)
    orgs = get_all_resources(
        session.authorize(organizations_request_factory(endpoint)),
        parse_organizations, session.verify)
    say_ok()
    print(format_table(['name', 'space', 'org'],
                       join_rows(apps, spaces, orgs)))


commands = {
    'enable-diego': lambda s, a: toggle_diego_support(s, a, True),
    'disable-diego': lambda s, a: toggle_diego_support(s, a, False),
    'has-diego-enabled': lambda s, a: print(
        format_bool(DiegoSupport(s).is_diego_enabled(a.app_name))),
    'diego-apps': lambda s, a: show_apps(s, True),
    'dea-apps': lambda s, a: show_apps(s, False),
}


def build_parser():
    args = argparse.ArgumentParser(
        prog='cf', description='Inspects and toggles Diego support of apps')
    args.add_argument('-v', '--verbose', action='store_true',
                      help='Indicates that verbose logging will be enabled')
    sub = args.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True
    for name, help_text in [
            ('enable-diego', 'enable Diego support for an app'),
            ('disable-diego', 'disable Diego support for an app'),
            ('has-diego-enabled',
             'Check if Diego support is enabled for an app')]:
        cmd = sub.add_parser(name, help=help_text, description=help_text)
        cmd.add_argument('app_name', metavar='APP_NAME')
    for name, runtime in [('diego-apps', 'Diego'), ('dea-apps', 'DEA')]:
        help_text = ('Lists all apps running on the {} runtime that are '
                     'visible to the user'.format(runtime))
        sub.add_parser(name, help=help_text, description=help_text)
    return args


def main(argv, session=None):
    """Runs one command. Invalid usage makes argparse print the usage, and
    nothing is done.

    Returns:
        int: the process exit status"""
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        return e.code
    if args.verbose or os.getenv('CF_TRACE', '') == 'true':
        logger.setLevel(logging.DEBUG)
    try:
        if session is None:
            session = Session().load()
        commands[args.command](session, args)
    except DiegoEnablerException as e:
        return exit_with_error(e, getattr(e, 'output', ()))
    return 0


def cli():
    sys.exit(main(sys.argv[1:]))


if __name__ == '__main__':
    cli()
