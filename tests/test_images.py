"""
Tests for product image URL handling.
"""

import io
from urllib.error import HTTPError, URLError

from images import check_image_url, convert_google_drive_link, validate_image_url


class FakeResponse:
    def __init__(self, status, content_type):
        self.status = status
        self.headers = {"Content-Type": content_type}

    def getcode(self):
        return self.status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeOpener:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def open(self, request, timeout=None):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.response


class TestDriveLinks:
    def test_file_link_converted(self):
        url = "https://drive.google.com/file/d/abc_123-XYZ/view?usp=sharing"
        assert convert_google_drive_link(url) == "https://drive.google.com/uc?export=download&id=abc_123-XYZ"

    def test_open_link_converted(self):
        url = "https://drive.google.com/open?id=abc123"
        assert convert_google_drive_link(url) == "https://drive.google.com/uc?export=download&id=abc123"

    def test_other_urls_untouched(self):
        assert convert_google_drive_link("https://example.com/a.png") == "https://example.com/a.png"


class TestValidation:
    def test_known_host_accepted(self):
        assert validate_image_url("https://images.pexels.com/photos/1/pexels-photo.jpeg") == (True, None)
        assert validate_image_url("https://i.imgur.com/abcd") == (True, None)

    def test_unknown_host_needs_extension(self):
        assert validate_image_url("https://shop.example.com/honey.webp") == (True, None)
        valid, error = validate_image_url("https://shop.example.com/honey")
        assert not valid
        assert "known image host" in error

    def test_non_http_scheme_rejected(self):
        assert validate_image_url("ftp://example.com/a.png") == (False, "URL must use HTTP or HTTPS protocol")
        assert validate_image_url("not a url") == (False, "Invalid URL format")


class TestReachability:
    def test_image_response_is_valid(self):
        opener = FakeOpener(FakeResponse(200, "image/jpeg"))
        result = check_image_url("https://drive.google.com/file/d/abc/view", opener=opener)
        assert result["valid"]
        assert result["statusCode"] == 200
        assert opener.requests[0].get_method() == "HEAD"
        assert opener.requests[0].full_url == "https://drive.google.com/uc?export=download&id=abc"

    def test_html_response_is_not_an_image(self):
        result = check_image_url("https://example.com/a.png", opener=FakeOpener(FakeResponse(200, "text/html")))
        assert not result["valid"]
        assert result["contentType"] == "text/html"

    def test_http_error_reported(self):
        error = HTTPError("https://example.com/a.png", 404, "Not Found", {}, io.BytesIO())
        result = check_image_url("https://example.com/a.png", opener=FakeOpener(error=error))
        assert result == {"url": "https://example.com/a.png", "valid": False, "statusCode": 404, "error": "HTTP 404"}

    def test_network_error_reported(self):
        result = check_image_url("https://example.com/a.png", opener=FakeOpener(error=URLError("timed out")))
        assert not result["valid"]
        assert result["error"].startswith("Network error")
