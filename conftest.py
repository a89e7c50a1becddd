#!/usr/bin/env python3
import os
import sys
import tempfile
from pathlib import Path

# Set minimal environment variables as early as possible (on import),
# so modules imported during test collection see them.
_base_dir = Path(tempfile.mkdtemp(prefix="test_env_"))
_assets = _base_dir / "assets"
_logs = _base_dir / "logs"

for _p in (_assets, _logs):
    _p.mkdir(parents=True, exist_ok=True)

os.environ.setdefault("ASSET_DIR", str(_assets))
os.environ.setdefault("LOG_DIR", str(_logs))
os.environ.setdefault("METRICS_LOG_FILE", str(_base_dir / "metrics.jsonl"))

# Explicit defaults used in tests: no Redis server, jobs run in-process
os.environ.setdefault("USE_REDIS_STORE", "false")
os.environ.setdefault("INMEMORY_QUEUE_THREADS", "2")

# Project modules are imported as top-level packages
sys.path.insert(0, str(Path(__file__).parent / "page-ingest"))
