# FILE: config.py  # settings shared by the client and the sandbox server

import os  # env
import logging  # logging

from dotenv import load_dotenv  # .env support

# -------------------- Config --------------------
load_dotenv()  # load .env

API_BASE_URL = os.getenv("API_BASE_URL", "https://api.yolsepetigo.com").rstrip("/")  # REST base
WS_BASE_URL = os.getenv("WS_BASE_URL", "wss://api.yolsepetigo.com").rstrip("/")  # push base
INSURANCE_PREFIX = "/" + os.getenv("INSURANCE_PREFIX", "/insurance").strip("/")  # agency API prefix
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))  # seconds

CREDENTIALS_PATH = os.getenv("CREDENTIALS_PATH", os.path.expanduser("~/.yolsepeti/credentials.json"))  # token store

RECONNECT_INITIAL_DELAY = float(os.getenv("RECONNECT_INITIAL_DELAY", "1.0"))  # seconds
REQUEST_CHANNEL_MAX_DELAY = float(os.getenv("REQUEST_CHANNEL_MAX_DELAY", "30.0"))  # seconds
LOCATION_CHANNEL_MAX_DELAY = float(os.getenv("LOCATION_CHANNEL_MAX_DELAY", "15.0"))  # seconds

GEOLOCATION_TIMEOUT = float(os.getenv("GEOLOCATION_TIMEOUT", "15.0"))  # seconds
LOCATION_SHARE_LINK_BASE = os.getenv("LOCATION_SHARE_LINK_BASE", "https://yolsepetigo.com/konum").rstrip("/")  # customer page

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()  # log level

# Sandbox server
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-secret")  # JWT key
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))  # access lifetime
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))  # refresh lifetime
SANDBOX_AGENCY_EMAIL = os.getenv("SANDBOX_AGENCY_EMAIL", "acente@example.com").strip().lower()  # seeded agency
SANDBOX_AGENCY_PASSWORD = os.getenv("SANDBOX_AGENCY_PASSWORD", "change-me")  # seeded password
PASSWORD_PEPPER = os.getenv("PASSWORD_PEPPER", "change-me-pepper")  # pepper
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))  # bcrypt rounds
TRACKING_LINK_BASE = os.getenv("TRACKING_LINK_BASE", "https://yolsepetigo.com/takip").rstrip("/")  # tracking page
PAYMENT_LINK_BASE = os.getenv("PAYMENT_LINK_BASE", "https://yolsepetigo.com/odeme").rstrip("/")  # payment page
ALLOW_ORIGINS_ENV = os.getenv("ALLOW_ORIGINS", "*")  # CORS
SMS_WEBHOOK_URL = os.getenv("SMS_WEBHOOK_URL", "").strip()  # optional SMS sink

# -------------------- Logger --------------------

def setup_logger(name: str, tag: str) -> logging.Logger:  # tagged stream logger
    logger = logging.getLogger(name)  # logger
    if not logger.handlers:  # once per logger
        h = logging.StreamHandler()  # handler
        fmt = logging.Formatter(f"[{tag}] %(levelname)s: %(message)s")  # format
        h.setFormatter(fmt)  # set format
        logger.addHandler(h)  # add handler
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))  # level
    return logger  # logger
