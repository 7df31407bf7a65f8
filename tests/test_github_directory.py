#!/usr/bin/env python3
"""
Unit tests for the GitHub directory client and the HTTP client base.

HTTP traffic is mocked at the ``request`` level for the GitHub operations and
at the connection level for the base request handling.
"""

import os
import sys
import json
import time
import socket
import threading
import unittest
from unittest.mock import MagicMock, Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from team_sync.directories import load_directory_client
from team_sync.directories.base import (
    DirectoryAuthenticationError,
    DirectoryError,
    SyncCancelled,
)
from team_sync.directories.github import GitHubDirectoryClient, parse_link_header
from team_sync.membership import Role


def make_response(status=200, body=None, headers=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = b'' if body is None else json.dumps(body).encode('utf-8')
    response.getheaders.return_value = list((headers or {}).items())
    return response


class TestParseLinkHeader(unittest.TestCase):

    def test_next_and_last(self):
        header = ('<https://api.github.com/orgs/acme/members?page=2>; rel="next", '
                  '<https://api.github.com/orgs/acme/members?page=5>; rel="last"')
        self.assertEqual(parse_link_header(header), {
            'next': 'https://api.github.com/orgs/acme/members?page=2',
            'last': 'https://api.github.com/orgs/acme/members?page=5',
        })

    def test_empty(self):
        self.assertEqual(parse_link_header(''), {})
        self.assertEqual(parse_link_header(None), {})


class TestGitHubDirectoryClient(unittest.TestCase):
    """Test cases for GitHubDirectoryClient operations."""

    def setUp(self):
        self.client = GitHubDirectoryClient({'token': 'ghp_secret', 'per_page': 2})

    def test_defaults(self):
        self.assertEqual(self.client.host, 'api.github.com')
        self.assertEqual(self.client.auth_headers['Authorization'], 'Bearer ghp_secret')
        headers = self.client.default_headers()
        self.assertEqual(headers['Accept'], 'application/vnd.github+json')
        self.assertEqual(headers['X-GitHub-Api-Version'], '2022-11-28')

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_list_team_members_follows_pagination(self, mock_request):
        next_url = 'https://api.github.com/orgs/acme/teams/go-readability/members?role=member&per_page=2&page=2'
        mock_request.side_effect = [
            (200, {'link': f'<{next_url}>; rel="next"'}, [{'login': 'alice'}, {'login': 'bob'}]),
            (200, {}, [{'login': 'carol'}]),
        ]

        members = self.client.list_team_members('acme', 'go-readability', Role.MEMBER)

        self.assertEqual(members, {'alice', 'bob', 'carol'})
        self.assertEqual(mock_request.call_args_list[0][0], (
            'GET', '/orgs/acme/teams/go-readability/members?role=member&per_page=2'))
        self.assertEqual(mock_request.call_args_list[1][0], ('GET', next_url))

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_list_org_admins(self, mock_request):
        mock_request.return_value = (200, {}, [{'login': 'root'}, {'id': 7}])

        admins = self.client.list_org_admins('acme')

        self.assertEqual(admins, {'root'})
        mock_request.assert_called_once_with('GET', '/orgs/acme/members?role=admin&per_page=2')

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_listing_error_is_wrapped(self, mock_request):
        mock_request.side_effect = DirectoryError("HTTP 404 Not Found", 404)

        with self.assertRaises(DirectoryError) as ctx:
            self.client.list_team_members('acme', 'missing', Role.MAINTAINER)

        self.assertIn('Failed to get maintainers for GitHub team acme/missing', str(ctx.exception))
        self.assertEqual(ctx.exception.status, 404)

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_non_list_response_rejected(self, mock_request):
        mock_request.return_value = (200, {}, {'message': 'unexpected'})

        with self.assertRaises(DirectoryError):
            self.client.list_org_admins('acme')

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_upsert_membership(self, mock_request):
        mock_request.return_value = (200, {}, {'state': 'active', 'role': 'maintainer'})

        self.client.upsert_membership('acme', 'go-readability', 'alice', Role.MAINTAINER)

        mock_request.assert_called_once_with(
            'PUT', '/orgs/acme/teams/go-readability/memberships/alice', body={'role': 'maintainer'})

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_remove_membership(self, mock_request):
        mock_request.return_value = (204, {}, None)

        self.client.remove_membership('acme', 'go-readability', 'bob')

        mock_request.assert_called_once_with('DELETE', '/orgs/acme/teams/go-readability/memberships/bob')

    @patch('team_sync.directories.github.GitHubDirectoryClient.request')
    def test_mutation_errors_keep_their_type(self, mock_request):
        mock_request.side_effect = DirectoryAuthenticationError("Authentication failed", 401)

        with self.assertRaises(DirectoryAuthenticationError) as ctx:
            self.client.remove_membership('acme', 'team', 'bob')

        self.assertIn('Failed to remove bob from acme/team', str(ctx.exception))


class TestHTTPRequest(unittest.TestCase):
    """Test cases for request handling in HTTPDirectoryClient."""

    def setUp(self):
        patcher = patch('team_sync.directories.base.HTTPSConnection')
        self.mock_connection_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.connection = MagicMock()
        self.mock_connection_class.return_value = self.connection
        self.cancel_event = threading.Event()
        self.client = GitHubDirectoryClient(
            {'base_url': 'https://github.example.com/api/v3', 'token': 'abc', 'timeout_seconds': 5},
            cancel_event=self.cancel_event,
        )
        self.addCleanup(self.client.close)

    def test_successful_request(self):
        self.connection.getresponse.return_value = make_response(
            body=[{'login': 'alice'}], headers={'Link': '<x>; rel="last"'})

        status, headers, data = self.client.request('GET', '/orgs/acme/members')

        self.assertEqual(status, 200)
        self.assertEqual(headers, {'link': '<x>; rel="last"'})
        self.assertEqual(data, [{'login': 'alice'}])
        method, path, body, headers_sent = self.connection.request.call_args[0]
        self.assertEqual((method, path, body), ('GET', '/api/v3/orgs/acme/members', None))
        self.assertEqual(headers_sent['Authorization'], 'Bearer abc')
        self.mock_connection_class.assert_called_once_with(
            'github.example.com', context=self.client.ssl_context, timeout=5)

    def test_json_body(self):
        self.connection.getresponse.return_value = make_response(body={'role': 'member'})

        self.client.request('PUT', '/x', body={'role': 'member'})

        _, _, body, headers_sent = self.connection.request.call_args[0]
        self.assertEqual(json.loads(body), {'role': 'member'})
        self.assertEqual(headers_sent['Content-Type'], 'application/json')

    def test_empty_body_returns_none(self):
        self.connection.getresponse.return_value = make_response(status=204, reason='No Content')

        self.assertEqual(self.client.request('DELETE', '/x')[2], None)

    def test_connection_reused_within_thread(self):
        self.connection.getresponse.return_value = make_response(body=[])

        self.client.request('GET', '/a')
        self.client.request('GET', '/b')

        self.assertEqual(self.mock_connection_class.call_count, 1)

    def test_unauthorized(self):
        self.connection.getresponse.return_value = make_response(
            status=401, reason='Unauthorized', body={'message': 'Bad credentials'})

        with self.assertRaises(DirectoryAuthenticationError):
            self.client.request('GET', '/orgs/acme/members')

    def test_http_error_includes_message(self):
        self.connection.getresponse.return_value = make_response(
            status=422, reason='Unprocessable Entity', body={'message': 'Validation Failed'})

        with self.assertRaises(DirectoryError) as ctx:
            self.client.request('PUT', '/x', body={})

        self.assertEqual(ctx.exception.status, 422)
        self.assertIn('Validation Failed', str(ctx.exception))

    def test_transport_error_drops_connection(self):
        self.connection.request.side_effect = ConnectionResetError("reset")

        with self.assertRaises(DirectoryError):
            self.client.request('GET', '/x')

        self.connection.close.assert_called_once()
        self.connection.request.side_effect = None
        self.connection.getresponse.return_value = make_response(body=[])
        self.client.request('GET', '/x')
        self.assertEqual(self.mock_connection_class.call_count, 2)

    def test_invalid_json(self):
        response = make_response()
        response.read.return_value = b'not json'
        self.connection.getresponse.return_value = response

        with self.assertRaises(DirectoryError):
            self.client.request('GET', '/x')

    def test_non_utf8_error_page(self):
        response = make_response(status=502, reason='Bad Gateway')
        response.read.return_value = b'<html>\xe9chec</html>'
        self.connection.getresponse.return_value = response

        with self.assertRaises(DirectoryError) as ctx:
            self.client.request('PUT', '/x', body={'role': 'member'})

        self.assertEqual(ctx.exception.status, 502)
        self.assertIn('chec', str(ctx.exception))

    def test_cancelled_before_request(self):
        self.cancel_event.set()

        with self.assertRaises(SyncCancelled):
            self.client.list_org_admins('acme')

        self.connection.request.assert_not_called()

    def test_absolute_links_on_same_host(self):
        self.assertEqual(self.client.build_path('https://github.example.com/api/v3/x?page=2'),
                         '/api/v3/x?page=2')
        with self.assertRaises(DirectoryError):
            self.client.build_path('https://evil.example.com/x')

    def test_close_closes_connections(self):
        self.connection.getresponse.return_value = make_response(body=[])
        self.client.request('GET', '/x')

        self.client.close()

        self.connection.close.assert_called_once()

    def test_invalid_base_url(self):
        with self.assertRaises(DirectoryError):
            GitHubDirectoryClient({'base_url': 'not a url'})


class TestCancelInFlight(unittest.TestCase):
    """Cancellation against a server that accepts connections but never answers."""

    def setUp(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(('127.0.0.1', 0))
        self.server.listen(1)
        self.addCleanup(self.server.close)
        self.accepted = []

        def accept():
            try:
                conn, _ = self.server.accept()
            except OSError:
                return
            self.accepted.append(conn)

        threading.Thread(target=accept, daemon=True).start()
        self.addCleanup(lambda: [conn.close() for conn in self.accepted])

        self.cancel_event = threading.Event()
        port = self.server.getsockname()[1]
        self.client = GitHubDirectoryClient(
            {'base_url': f'http://127.0.0.1:{port}', 'timeout_seconds': 10},
            cancel_event=self.cancel_event,
        )
        self.addCleanup(self.client.close)

    def test_blocked_request_returns_on_cancel(self):
        timer = threading.Timer(0.2, self.cancel_event.set)
        timer.start()
        self.addCleanup(timer.cancel)

        start = time.monotonic()
        with self.assertRaises(SyncCancelled):
            self.client.list_org_admins('acme')

        self.assertLess(time.monotonic() - start, 5)


class TestLoadDirectoryClient(unittest.TestCase):

    def test_loads_github_module(self):
        client = load_directory_client({'module': 'github', 'token': 't'})
        self.assertIsInstance(client, GitHubDirectoryClient)

    def test_unknown_module(self):
        with self.assertRaises(DirectoryError):
            load_directory_client({'module': 'does_not_exist'})


if __name__ == '__main__':
    unittest.main()
