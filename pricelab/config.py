# pricelab/config.py
import os

from dotenv import load_dotenv

# Load .env variables (DATABASE_URL, LOG_LEVEL, experiment defaults)
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./experiments.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Used when a caller creates an experiment without these fields
DEFAULT_TRAFFIC_ALLOCATION = float(os.getenv("DEFAULT_TRAFFIC_ALLOCATION", "50"))
DEFAULT_MINIMUM_DETECTABLE_EFFECT = float(os.getenv("DEFAULT_MINIMUM_DETECTABLE_EFFECT", "0.05"))
DEFAULT_BASELINE_CONVERSION_RATE = float(os.getenv("DEFAULT_BASELINE_CONVERSION_RATE", "0.03"))
