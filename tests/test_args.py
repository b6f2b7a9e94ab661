from __future__ import annotations

import logging

import pytest

from scanbridge.args import MissingSettingError, process_args


def test_process_args_valid(tmp_path):
    (tmp_path / "SonarQube.Analysis.properties").write_text("sonar.organization=from-file\n")

    args = process_args("proj", "Name", "1.0", None, ["/d:sonar.host.url=http://server"], None, tmp_path)

    assert args.project_key == "proj"
    assert args.server_url == "http://server"
    assert args.organization == "from-file"
    assert args.properties_file_path == tmp_path / "SonarQube.Analysis.properties"


def test_process_args_explicit_organization_wins(tmp_path):
    args = process_args("proj", None, None, "cli-org", ["sonar.host.url=x", "sonar.organization=p"], None, tmp_path)
    assert args.organization == "cli-org"


def test_process_args_reports_all_problems(tmp_path, caplog):
    with caplog.at_level(logging.ERROR):
        assert process_args(None, None, None, None, [], None, tmp_path) is None
    assert "project key is required" in caplog.text
    assert "server URL is required" in caplog.text


def test_process_args_invalid_property(tmp_path, caplog):
    with caplog.at_level(logging.ERROR):
        assert process_args("proj", None, None, None, ["sonar.host.url =x"], None, tmp_path) is None
    assert "is invalid" in caplog.text


def test_get_setting_missing_raises(tmp_path):
    args = process_args("proj", None, None, None, ["sonar.host.url=x"], None, tmp_path)
    with pytest.raises(MissingSettingError):
        args.get_setting("sonar.nothing")
    assert args.try_get_setting("sonar.nothing", "d") == "d"
