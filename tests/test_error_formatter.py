"""Tests for error redaction and custom formatter ordering."""

from __future__ import annotations

from capstone_server.config import Environment, GraphQLConfig
from capstone_server.errors import is_debug, make_error_formatter

PROD = Environment(production=True)
DEV = Environment(production=False)


def _error() -> dict:
    return {
        "message": "boom",
        "path": ["boom"],
        "extensions": {
            "code": "INTERNAL_SERVER_ERROR",
            "debug": {"sql": "select 1"},
            "exception": {"stacktrace": ["Traceback ..."]},
        },
    }


class TestDebugResolution:
    def test_explicit_flag_wins_over_environment(self):
        assert is_debug(GraphQLConfig(debug=True), PROD) is True
        assert is_debug(GraphQLConfig(debug=False), DEV) is False

    def test_defaults_to_non_production(self):
        assert is_debug(GraphQLConfig(), DEV) is True
        assert is_debug(GraphQLConfig(), PROD) is False
        assert is_debug(None, PROD) is False


class TestRedaction:
    def test_strips_debug_and_exception_when_not_debug(self):
        fmt = make_error_formatter(GraphQLConfig(debug=False), DEV)
        result = fmt(_error(), None)
        assert result["extensions"] == {"code": "INTERNAL_SERVER_ERROR"}
        assert result["message"] == "boom"
        assert result["path"] == ["boom"]

    def test_production_default_strips(self):
        fmt = make_error_formatter(None, PROD)
        result = fmt(_error(), None)
        assert "debug" not in result["extensions"]
        assert "exception" not in result["extensions"]

    def test_debug_passes_fields_through(self):
        fmt = make_error_formatter(GraphQLConfig(debug=True), PROD)
        result = fmt(_error(), None)
        assert result == _error()

    def test_no_extensions_is_untouched(self):
        fmt = make_error_formatter(GraphQLConfig(debug=False), DEV)
        assert fmt({"message": "plain"}, None) == {"message": "plain"}

    def test_only_one_field_present(self):
        fmt = make_error_formatter(GraphQLConfig(debug=False), DEV)
        result = fmt({"message": "m", "extensions": {"debug": 1}}, None)
        assert result == {"message": "m", "extensions": {}}


class TestCustomFormatter:
    def test_custom_sees_redacted_input(self):
        seen = []

        def custom(formatted, error):
            seen.append((dict(formatted["extensions"]), error))
            return formatted

        cause = ValueError("x")
        fmt = make_error_formatter(GraphQLConfig(debug=False, engine_options={"format_error": custom}), DEV)
        fmt(_error(), cause)
        assert seen == [({"code": "INTERNAL_SERVER_ERROR"}, cause)]

    def test_custom_result_is_authoritative(self):
        fmt = make_error_formatter(
            GraphQLConfig(debug=True, engine_options={"format_error": lambda f, e: {"message": "hidden"}}),
            DEV,
        )
        assert fmt(_error(), None) == {"message": "hidden"}

    def test_custom_cannot_see_redacted_fields_in_production(self):
        fmt = make_error_formatter(
            GraphQLConfig(engine_options={"format_error": lambda f, e: f}),
            PROD,
        )
        result = fmt(_error(), None)
        assert "debug" not in result["extensions"]
        assert "exception" not in result["extensions"]
