from __future__ import annotations

import uvicorn

from voice_bridge.settings import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run("voice_bridge.main:app", host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
