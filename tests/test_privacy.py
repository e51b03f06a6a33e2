"""Tests for privacy filtering and PII scrubbing."""

from pulsewatch.privacy import (
    REDACTED,
    is_sensitive_key,
    sanitize_path,
    scrub_dict,
    scrub_exception_data,
    scrub_list,
    scrub_string,
    scrub_value,
)


class TestSanitizePath:
    """Tests for path sanitization."""

    def test_macos_path(self):
        """macOS paths should have username removed."""
        assert sanitize_path("/Users/john/code/file.py") == "/Users/<user>/code/file.py"

    def test_linux_path(self):
        """Linux paths should have username removed."""
        assert sanitize_path("/home/alice/app/main.py") == "/home/<user>/app/main.py"

    def test_windows_path_backslash(self):
        """Windows paths with backslashes should have username removed."""
        assert sanitize_path("C:\\Users\\bob\\code\\file.py") == "C:\\Users\\<user>\\code\\file.py"

    def test_windows_path_forward_slash(self):
        """Windows paths with forward slashes should have username removed."""
        assert sanitize_path("C:/Users/bob/code/file.py") == "C:/Users/<user>/code/file.py"

    def test_non_user_path(self):
        """Paths not in user directories should be unchanged."""
        assert sanitize_path("/usr/local/lib/python3.12/json/decoder.py") == (
            "/usr/local/lib/python3.12/json/decoder.py"
        )


class TestIsSensitiveKey:
    """Tests for sensitive key detection."""

    def test_credentials(self):
        """Password, token and key fields should be detected."""
        assert is_sensitive_key("password")
        assert is_sensitive_key("access_token")
        assert is_sensitive_key("API_KEY")
        assert is_sensitive_key("Authorization")

    def test_dashed_keys(self):
        """Header-style dashed names are normalized."""
        assert is_sensitive_key("x-api-key")
        assert is_sensitive_key("user-email")

    def test_non_sensitive_keys(self):
        """Non-sensitive keys should not be flagged."""
        assert not is_sensitive_key("name")
        assert not is_sensitive_key("count")
        assert not is_sensitive_key("status")
        assert not is_sensitive_key("code")


class TestScrubString:
    """Tests for string content scrubbing."""

    def test_email_scrubbing(self):
        """Email addresses should be scrubbed."""
        result = scrub_string("Contact user@example.com for help")
        assert REDACTED in result
        assert "user@example.com" not in result

    def test_credit_card_scrubbing(self):
        """Credit card numbers should be scrubbed."""
        result = scrub_string("Card: 4111-1111-1111-1111")
        assert "4111" not in result

    def test_bearer_token_scrubbing(self):
        """Bearer tokens should be scrubbed."""
        result = scrub_string("Header: Bearer abc123xyz789")
        assert "abc123xyz789" not in result

    def test_non_sensitive_string(self):
        """Non-sensitive strings should pass through."""
        original = "order accepted"
        assert scrub_string(original) == original


class TestScrubDict:
    """Tests for dictionary scrubbing."""

    def test_sensitive_keys_scrubbed(self):
        """Dictionary with sensitive keys should have values redacted."""
        result = scrub_dict({"username": "john", "password": "secret123", "api_key": "sk-abc"})

        assert result["username"] == "john"
        assert result["password"] == REDACTED
        assert result["api_key"] == REDACTED

    def test_nested_dict_scrubbing(self):
        """Nested dictionaries should be scrubbed."""
        data = {"user": {"name": "john", "profile": {"token": "abc123", "status": "active"}}}
        result = scrub_dict(data)

        assert result["user"]["name"] == "john"
        assert result["user"]["profile"]["token"] == REDACTED
        assert result["user"]["profile"]["status"] == "active"

    def test_sensitive_key_entire_value_redacted(self):
        """When a key is sensitive, the entire value should be redacted."""
        result = scrub_dict({"credentials": {"password": "secret", "user": "bob"}})
        assert result["credentials"] == REDACTED

    def test_original_untouched(self):
        """Scrubbing returns a copy."""
        data = {"password": "secret"}
        scrub_dict(data)
        assert data == {"password": "secret"}

    def test_scrub_values_disabled(self):
        """With scrub_values=False, string values are kept."""
        result = scrub_dict({"log": "mail user@example.com"}, scrub_values=False)
        assert result["log"] == "mail user@example.com"


class TestScrubList:
    """Tests for list scrubbing."""

    def test_list_of_dicts_scrubbed(self):
        """List of dictionaries should have sensitive data scrubbed."""
        result = scrub_list([{"name": "john", "password": "a"}, {"name": "jane", "token": "b"}])

        assert result[0] == {"name": "john", "password": REDACTED}
        assert result[1] == {"name": "jane", "token": REDACTED}


class TestScrubValue:
    """Tests for scrubbing captured request and response bodies."""

    def test_parsed_json_body(self):
        """Parsed JSON bodies are scrubbed like dictionaries."""
        assert scrub_value({"data": {"email": "a@b.co"}, "code": 0}) == {
            "data": {"email": REDACTED},
            "code": 0,
        }

    def test_text_body(self):
        """Plain text bodies are pattern-scrubbed."""
        assert "a@b.co" not in scrub_value("reply to a@b.co")

    def test_other_values_unchanged(self):
        """Numbers and None pass through."""
        assert scrub_value(42) == 42
        assert scrub_value(None) is None


class TestScrubExceptionData:
    """Tests for serialized exception scrubbing."""

    def test_stacktrace_path_sanitization(self):
        """Stack trace file paths should be sanitized."""
        exception_data = {
            "values": [
                {
                    "stacktrace": {
                        "frames": [
                            {
                                "filename": "/Users/john/code/app.py",
                                "abs_path": "/Users/john/code/app.py",
                                "lineno": 42,
                            },
                        ],
                    },
                },
            ],
        }
        scrub_exception_data(exception_data)

        frame = exception_data["values"][0]["stacktrace"]["frames"][0]
        assert frame["filename"] == "/Users/<user>/code/app.py"
        assert frame["abs_path"] == "/Users/<user>/code/app.py"

    def test_exception_message_scrubbing(self):
        """Exception messages should have sensitive data scrubbed."""
        exception_data = {"values": [{"type": "ValueError", "value": "Bad email: user@example.com"}]}
        scrub_exception_data(exception_data)

        assert "user@example.com" not in exception_data["values"][0]["value"]

    def test_local_variables_dropped(self):
        """Local variables never leave the process."""
        exception_data = {
            "values": [
                {"stacktrace": {"frames": [{"filename": "app.py", "vars": {"password": "x"}}]}},
            ],
        }
        scrub_exception_data(exception_data)

        frame = exception_data["values"][0]["stacktrace"]["frames"][0]
        assert "vars" not in frame
