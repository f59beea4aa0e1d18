"""
Run the Bookings service with uvicorn:

    python -m bookings_service

HOST and PORT default to 0.0.0.0:8002.
"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "bookings_service.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8002")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
