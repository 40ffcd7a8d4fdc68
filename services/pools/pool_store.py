import json
import os
import tempfile
from pathlib import Path
from typing import Optional

DATA_DIR = Path(os.getenv("DATA_DIR", str(Path(__file__).resolve().parents[2] / "data")))
POOL_STATE_PATH = Path(os.getenv("POOL_STATE_PATH", str(DATA_DIR / "pool_state.json")))


def pool_state(path: Optional[Path] = None) -> Optional[dict]:
    p = Path(path or POOL_STATE_PATH)
    if p.exists():
        return json.loads(p.read_text())
    return None


def pool_save(st: dict, path: Optional[Path] = None) -> None:
    """Write-then-rename so a crash never leaves a half-written snapshot."""
    p = Path(path or POOL_STATE_PATH)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".pool_state.", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(st, f, indent=2)
        os.replace(tmp, p)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
