import json
from typing import Any, Dict


def log_event(component: str, payload: Dict[str, Any]) -> None:
    """Print one structured JSON log line; never raises."""
    try:
        print(json.dumps({"component": component, **payload}, ensure_ascii=False, default=str))
    except Exception:
        try:
            print({"component": component, **payload})
        except Exception:
            pass
