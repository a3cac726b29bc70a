from __future__ import annotations

import json

from civicportal.core.config import DEFAULT_TIMINGS, ConfigManager
from civicportal.core.config.paths import ConfigFsPaths


def main() -> None:
    cm = ConfigManager(fs=ConfigFsPaths("."), logger=None, read_only=True)
    cfg = cm.load_all()
    out = cfg.model_dump(mode="json")
    out["session_timings"] = DEFAULT_TIMINGS.model_dump(mode="json")
    print(json.dumps(out, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
