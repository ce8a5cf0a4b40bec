# backend/kirana/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/kirana.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///kirana.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Delivery pricing (paise). Orders at or above the threshold ship free.
    DELIVERY_FREE_THRESHOLD_CENTS = int(os.environ.get("DELIVERY_FREE_THRESHOLD_CENTS", "49900"))
    DELIVERY_FEE_CENTS = int(os.environ.get("DELIVERY_FEE_CENTS", "4000"))

    # Real-time order feed
    ORDER_EVENT_QUEUE_SIZE = int(os.environ.get("ORDER_EVENT_QUEUE_SIZE", "256"))
    ORDER_EVENT_HEARTBEAT_SECONDS = float(os.environ.get("ORDER_EVENT_HEARTBEAT_SECONDS", "15"))

    ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:8080",
        ).split(",")
        if origin.strip()
    }
