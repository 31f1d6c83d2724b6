import sys
from pathlib import Path

import pytest

# Add scripts to sys.path so the ipws modules import as top-level modules
SCRIPTS_PATH = Path(__file__).resolve().parent.parent / "scripts"
if SCRIPTS_PATH.as_posix() not in sys.path:
    sys.path.insert(0, SCRIPTS_PATH.as_posix())

from ipws_records import Classification  # noqa: E402


WS_LINES = [
    "# weight systems",
    "1 1 1 1",
    "2 1 1 1 1",
    "3 1 1 2",
    "4 1 2 3",
]

# 1: non-IP, 2: reflexive K3, 3: non-reflexive, 4: no polytope info (gap)
INFO_LINES = [
    "1 -",
    "2 M:35 4 N:5 4 H:1",
    "3 M:5 3 F:3",
]


def write_lines(path: Path, lines) -> Path:
    path.write_text("".join(line + "\n" for line in lines))
    return path


@pytest.fixture
def ws_file(tmp_path: Path):
    """Weight-system input with one of each classification and one gap."""
    return write_lines(tmp_path / "ws.txt", WS_LINES)


@pytest.fixture
def info_file(tmp_path: Path):
    """Polytope-info input matching ws_file except for key 4."""
    return write_lines(tmp_path / "info.txt", INFO_LINES)


@pytest.fixture
def outputs(tmp_path: Path):
    """One output path per partition."""
    out = tmp_path / "parquet"
    return {c: out / f"{c.value}.parquet" for c in Classification}
