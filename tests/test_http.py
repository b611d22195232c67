import io
import socket
import unittest
from unittest.mock import MagicMock, patch
from urllib import error as urllib_error

from services.errors import TransportError
from utils.http import build_url, http_request


def fake_response(status, raw, headers=None):
    response = MagicMock()
    response.getcode.return_value = status
    response.read.return_value = raw
    response.headers = headers or {}
    return response


class HttpRequestTestCase(unittest.TestCase):
    def patch_urlopen(self, response):
        patcher = patch("utils.http.urllib_request.urlopen")
        mock_urlopen = patcher.start()
        self.addCleanup(patcher.stop)
        mock_urlopen.return_value.__enter__.return_value = response
        return mock_urlopen

    def test_decodes_json_body(self):
        mock_urlopen = self.patch_urlopen(fake_response(200, b'{"key": "ABC-1"}', {"X-Trace": "1"}))
        response = http_request("GET", "https://api.example.test/issue", token="t", params={"a": 1, "b": None})

        self.assertTrue(response.ok)
        self.assertEqual(response.body, {"key": "ABC-1"})
        self.assertEqual(response.headers, {"X-Trace": "1"})
        sent = mock_urlopen.call_args.args[0]
        self.assertEqual(sent.full_url, "https://api.example.test/issue?a=1")
        self.assertEqual(sent.get_header("Authorization"), "Bearer t")

    def test_body_that_is_not_utf8_does_not_raise(self):
        self.patch_urlopen(fake_response(200, b"\xff\xfe{"))
        response = http_request("GET", "https://api.example.test/issue")
        self.assertEqual(response.status, 200)
        self.assertEqual(response.body, {})

    def test_error_status_with_binary_page_is_returned(self):
        error = urllib_error.HTTPError(
            "https://api.example.test/issue", 502, "Bad Gateway", {"Retry-After": "3"}, io.BytesIO(b"<html>\xff</html>")
        )
        with patch("utils.http.urllib_request.urlopen", side_effect=error):
            response = http_request("GET", "https://api.example.test/issue")
        self.assertEqual(response.status, 502)
        self.assertEqual(response.body, {})
        self.assertEqual(response.headers["Retry-After"], "3")

    def test_connection_failures_become_transport_errors(self):
        for failure in (urllib_error.URLError("refused"), socket.timeout("slow")):
            with patch("utils.http.urllib_request.urlopen", side_effect=failure):
                with self.assertRaises(TransportError):
                    http_request("GET", "https://api.example.test/issue")

    def test_build_url_keeps_existing_query(self):
        self.assertEqual(build_url("https://x.test/a?b=1", {"c": "d e"}), "https://x.test/a?b=1&c=d+e")
        self.assertEqual(build_url("https://x.test/a"), "https://x.test/a")


if __name__ == "__main__":
    unittest.main()
