import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

IMDS_ENDPOINT = os.environ.get("IMDS_ENDPOINT", "http://169.254.169.254").rstrip("/")
IMDS_TIMEOUT_SECONDS = float(os.environ.get("IMDS_TIMEOUT_SECONDS", "2"))
IMDS_LOG_LEVEL = os.environ.get("IMDS_LOG_LEVEL", "WARNING").upper()
if not isinstance(logging.getLevelName(IMDS_LOG_LEVEL), int):
    IMDS_LOG_LEVEL = "WARNING"

logging.getLogger("imdsv2").setLevel(IMDS_LOG_LEVEL)
