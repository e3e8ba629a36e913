"""Tests for placeholder token interpolation."""

import pytest

from api_proxy.core.interpolate import Interpolator, get_interpolator


def lookup(values):
    def resolve(name):
        if name not in values:
            raise KeyError(name)
        return values[name]
    return resolve


class TestInterpolator:
    """Test token substitution in strings and mappings."""

    def test_string_without_tokens_is_unchanged(self):
        interpolate = Interpolator()
        assert interpolate("plain value", lookup({})) == "plain value"

    def test_substitutes_every_token(self):
        interpolate = Interpolator()
        result = interpolate("${A}-${b_c}-${A}", lookup({"A": "1", "b_c": 2}))
        assert result == "1-2-1"

    def test_identifier_is_letters_and_underscores_only(self):
        interpolate = Interpolator()
        # Digits are not part of a token name, so nothing is resolved.
        assert interpolate("${KEY1}", lookup({})) == "${KEY1}"

    def test_tokens_are_case_insensitive(self):
        interpolate = Interpolator()
        assert interpolate("${Api_Key}", lookup({"Api_Key": "secret"})) == "secret"

    def test_custom_delimiters_are_literal(self):
        interpolate = Interpolator("[(", ")]")
        result = interpolate("x=[(TOKEN)] y=${TOKEN}", lookup({"TOKEN": "v"}))
        assert result == "x=v y=${TOKEN}"

    def test_regex_metacharacter_delimiters(self):
        interpolate = Interpolator("$.*", "+?")
        assert interpolate("$.*NAME+?", lookup({"NAME": "ok"})) == "ok"
        assert interpolate("$aaNAME+", lookup({})) == "$aaNAME+"

    def test_empty_delimiters_rejected(self):
        with pytest.raises(ValueError):
            Interpolator("", "}")

    def test_mapping_is_processed_recursively_into_new_mapping(self):
        interpolate = Interpolator()
        source = {
            "name": "${NAME}",
            "count": 3,
            "flag": None,
            "items": ["${NAME}"],
            "nested": {"inner": "x ${NAME}"},
        }
        result = interpolate(source, lookup({"NAME": "joe"}))

        assert result == {
            "name": "joe",
            "count": 3,
            "flag": None,
            "items": ["${NAME}"],
            "nested": {"inner": "x joe"},
        }
        assert list(result) == list(source)
        assert result is not source
        assert source["name"] == "${NAME}"
        assert source["nested"]["inner"] == "x ${NAME}"

    def test_resolver_failure_propagates_without_partial_result(self):
        interpolate = Interpolator()
        source = {"a": "${GOOD}", "b": "${BAD}"}
        with pytest.raises(KeyError):
            interpolate(source, lookup({"GOOD": "1"}))
        assert source == {"a": "${GOOD}", "b": "${BAD}"}

    def test_has_tokens(self):
        interpolate = Interpolator()
        assert interpolate.has_tokens("a ${B}")
        assert not interpolate.has_tokens("a $B")

    def test_get_interpolator_is_shared_per_delimiter_pair(self):
        assert get_interpolator("${", "}") is get_interpolator("${", "}")
        assert get_interpolator("${", "}") is not get_interpolator("{{", "}}")
