"""Run the service with uvicorn: ``python -m taigabridge``."""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "taigabridge.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
