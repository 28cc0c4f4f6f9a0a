# scripts/run_orchestrator.py
# ---------------------------------------------------------------------+
# Bootstrap: make the repository's src/ importable when run from a     +
# checkout without `pip install -e .`                                  +
# ---------------------------------------------------------------------+
import pathlib, sys
SRC = pathlib.Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
from treadmill.dev.orchestrator import main

if __name__ == "__main__":
    sys.exit(main())
