"""Run the AI Kanban backend (HTTP API and task socket relay on one port).

    python main.py
    uvicorn src.aikanban.api.main:asgi_app --port 5000
"""

import uvicorn
from dotenv import load_dotenv

from src.aikanban.config import get_settings


def main() -> None:
    load_dotenv()
    settings = get_settings()
    uvicorn.run("src.aikanban.api.main:asgi_app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
