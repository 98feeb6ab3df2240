import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

#### CONSTANTS ####
ONE_ENS = 10**18 #1000000000000000000
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

#### CONFIG ####

# Postgres connection
dbname = os.getenv("DB_NAME")
user = os.getenv("DB_USER")
host = os.getenv("DB_HOST")
port = os.getenv("DB_PORT")
password = os.getenv("DB_PASSWORD")


def build_connection_string(dbname=dbname, user=user, host=host, port=port, password=password):
    parts = {"dbname": dbname, "user": user, "host": host, "port": port, "password": password}
    return " ".join(f"{key}={value}" for key, value in parts.items() if value)


CONNECTION_STRING = build_connection_string()

# Recent activity
DEFAULT_THRESHOLD = int(Decimal(os.getenv("ACTIVITY_THRESHOLD", "10e20")))
DEFAULT_WINDOW_DAYS = int(os.getenv("ACTIVITY_WINDOW_DAYS", "30"))
ADJACENCY_LOOKBACK = int(os.getenv("ACTIVITY_LOOKBACK", "3"))
DELEGATION_LOOKAHEAD = int(os.getenv("ACTIVITY_LOOKAHEAD", "1"))
REVIEW_THRESHOLD = int(Decimal(os.getenv("ACTIVITY_REVIEW_THRESHOLD", str(50_000 * ONE_ENS))))
REFRESH_INTERVAL = int(os.getenv("REFRESH_INTERVAL", "300"))

# Dashboard
TOP_DELEGATES_LIMIT = 100
