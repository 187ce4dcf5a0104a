import os
from dotenv import load_dotenv

load_dotenv()

RELAY_URL = os.getenv("GHOST_RELAY_URL", "http://localhost:8000")
DATA_DIR = os.getenv("GHOST_DATA_DIR", "./ghost_data")
HTTP_TIMEOUT = float(os.getenv("GHOST_HTTP_TIMEOUT", "10"))
