from __future__ import annotations

import uvicorn

from cifar_ai.api.app import create_app
from cifar_ai.config import Settings


def main() -> None:  # pragma: no cover - tiny glue
    settings = Settings.load()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=int(settings.app.port), log_config=None)


if __name__ == "__main__":
    main()
