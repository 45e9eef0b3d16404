from __future__ import annotations

import uvicorn

from ..config import Settings
from .app import create_app


def main() -> None:
    s = Settings.load()
    uvicorn.run(create_app(s), host="0.0.0.0", port=s.app.port, log_config=None)


if __name__ == "__main__":
    main()
