"""Pytest configuration and fixtures for pass_dedupe tests."""

import pytest

OPTION_ENV_VARS = [
    "NORMALIZE_URLS",
    "CASE_INSENSITIVE_USERNAMES",
    "IGNORE_EMPTY_PASSWORDS",
    "PREFER_MODIFY_TIME",
    "OVERWRITE_OUTPUT",
]


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep user config files and option env vars out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for name in OPTION_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def write_csv(tmp_path):
    """Write CSV text to a file in the test directory and return its path."""
    def _write(text, name="passwords.csv"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def sample_export():
    """A small export with one duplicated account and one extra column."""
    return (
        "name,url,username,password,notes,modifyTime,createTime\n"
        "Example,https://example.com/login,alice,old-secret,first,2023-01-01,2022-01-01\n"
        "Other,https://other.org,bob,hunter2,,2023-05-01,2023-05-01\n"
        "Example,https://example.com/login,alice,new-secret,second,2023-06-01,2022-01-01\n"
    )
