"""python -m storefront でサーバーを起動する。"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "storefront.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
