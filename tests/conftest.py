import sys
from pathlib import Path


def pytest_configure():
    # Lambda packages `src/` flat, so tests import `common.*`, `state.*`, ... as top-level
    src_path = str(Path(__file__).resolve().parent.parent / "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)
