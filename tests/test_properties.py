from __future__ import annotations

import pytest

from scanbridge.properties import (
    DEFAULT_PROPERTIES_FILE_NAME,
    Property,
    PropertyError,
    PropertySet,
    is_secured_server_property,
    is_sensitive_property,
    parse_cmdline_properties,
    resolve_properties,
)


def test_property_parse_valid():
    prop = Property.parse("sonar.host.url=http://localhost:9000")
    assert prop == Property("sonar.host.url", "http://localhost:9000")


def test_property_parse_value_keeps_equals_and_spaces():
    prop = Property.parse("key=a=b c")
    assert prop.id == "key"
    assert prop.value == "a=b c"


@pytest.mark.parametrize("text", ["key =value", " key=value", "key=", "=value", "no-equals", ".key=value"])
def test_property_parse_invalid(text):
    assert Property.parse(text) is None


def test_property_set_rejects_duplicates():
    properties = PropertySet()
    properties.add(Property("a", "1"))
    with pytest.raises(PropertyError, match="Key: a, existing value: 1"):
        properties.add(Property("a", "2"))


def test_property_set_keys_are_case_sensitive():
    properties = PropertySet([Property("Key", "upper")])
    assert properties.get_value("Key") == "upper"
    assert properties.get_value("key") is None


def test_property_set_empty_key_raises():
    with pytest.raises(ValueError):
        PropertySet().get("")


def test_property_set_load_first_duplicate_wins(tmp_path):
    path = tmp_path / "a.properties"
    path.write_text("a=1\n# comment\nb=two words\na=2\n")

    properties = PropertySet.load(path)

    assert [p.id for p in properties] == ["a", "b"]
    assert properties.get_value("a") == "1"
    assert properties.get_value("b") == "two words"
    assert properties.file_path == path


def test_property_set_save_and_load(tmp_path):
    path = tmp_path / "out" / "x.properties"
    PropertySet([Property("a", "1"), Property("b.c", "2")]).save(path)

    assert PropertySet.load(path).get_value("b.c") == "2"


def test_parse_cmdline_strips_legacy_prefix():
    properties, errors = parse_cmdline_properties(["/d:sonar.verbose=true", "a=b"])
    assert errors == []
    assert properties.get_value("sonar.verbose") == "true"
    assert properties.get_value("a") == "b"


def test_parse_cmdline_reports_malformed_tokens():
    _, errors = parse_cmdline_properties(["/d:key =value", "ok=1"])
    assert errors == ["The format of the analysis property /d:key =value is invalid"]


def test_parse_cmdline_reports_duplicates():
    _, errors = parse_cmdline_properties(["a=1", "a=2"])
    assert len(errors) == 1
    assert "already been supplied" in errors[0]


def test_resolve_command_line_wins_over_file(tmp_path):
    (tmp_path / DEFAULT_PROPERTIES_FILE_NAME).write_text("shared=file\nfile.only=f\n")

    resolved, errors = resolve_properties(["shared=cmd"], None, tmp_path)

    assert errors == []
    assert resolved.get_value("shared") == "cmd"
    assert resolved.get_value("file.only") == "f"
    assert resolved.get_value("missing") is None
    assert [p.id for p in resolved.all_properties()] == ["shared", "file.only"]


def test_resolve_missing_default_file_is_not_an_error(tmp_path):
    resolved, errors = resolve_properties(["a=1"], None, tmp_path)
    assert errors == []
    assert len(resolved.file) == 0
    assert resolved.properties_file_path is None


def test_resolve_missing_explicit_file_fails(tmp_path):
    missing = tmp_path / "nope.properties"
    resolved, errors = resolve_properties([], missing, tmp_path)
    assert resolved is None
    assert "Unable to find the analysis settings file" in errors[0]


def test_resolve_explicit_file_wins_over_default(tmp_path):
    (tmp_path / DEFAULT_PROPERTIES_FILE_NAME).write_text("a=default\n")
    explicit = tmp_path / "custom.properties"
    explicit.write_text("a=explicit\n")

    resolved, _ = resolve_properties([], explicit, tmp_path)

    assert resolved.get_value("a") == "explicit"
    assert resolved.properties_file_path == explicit


def test_resolve_malformed_token_means_no_partial_result(tmp_path):
    resolved, errors = resolve_properties(["good=1", "bad token"], None, tmp_path)
    assert resolved is None
    assert errors


def test_sensitive_and_secured_keys():
    assert is_sensitive_property("sonar.token")
    assert is_sensitive_property("sonar.clientcert.password")
    assert not is_sensitive_property("sonar.host.url")
    assert is_secured_server_property("sonar.license.SECURED")
    assert not is_secured_server_property("sonar.exclusions")
