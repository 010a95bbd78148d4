# tests/utils/test_system_utils.py
import stat

import pytest

from chessmaster.exceptions import EngineNotConfiguredError
from chessmaster.utils.system_utils import find_stockfish_executable


def make_executable(path):
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def no_system_engine(monkeypatch):
    monkeypatch.delenv("STOCKFISH_PATH", raising=False)
    monkeypatch.setattr("chessmaster.utils.system_utils.shutil.which", lambda name: None)


def test_provided_path_is_authoritative(tmp_path, no_system_engine):
    engine = make_executable(tmp_path / "sf")
    assert find_stockfish_executable(str(engine)) == engine.resolve()

    plain = tmp_path / "not-executable"
    plain.write_text("")
    with pytest.raises(EngineNotConfiguredError):
        find_stockfish_executable(str(plain), candidates=[str(engine)])


def test_candidates_then_environment(tmp_path, monkeypatch, no_system_engine):
    from_env = make_executable(tmp_path / "env-sf")
    monkeypatch.setenv("STOCKFISH_PATH", str(from_env))

    assert find_stockfish_executable(None, [str(tmp_path / "missing")]) == from_env.resolve()

    candidate = make_executable(tmp_path / "candidate-sf")
    assert find_stockfish_executable(None, [str(candidate)]) == candidate.resolve()


def test_unresolvable_lists_paths_tried(tmp_path, no_system_engine):
    with pytest.raises(EngineNotConfiguredError) as excinfo:
        find_stockfish_executable(None, [str(tmp_path / "a"), str(tmp_path / "b")])

    assert str(tmp_path / "a") in str(excinfo.value)
    assert excinfo.value.kind == "not-configured"
