from decimal import Decimal
from pathlib import Path
import os

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# MongoDB (transactions need a replica set)
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
DB_NAME = os.environ.get('DB_NAME', 'finance_engine')

# JWT
JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY', 'your-secret-key-change-in-production-2024')

# Engine behaviour
IDEMPOTENCY_TTL_HOURS = int(os.environ.get('IDEMPOTENCY_TTL_HOURS', '24'))
IDEMPOTENCY_LEASE_SECONDS = int(os.environ.get('IDEMPOTENCY_LEASE_SECONDS', '60'))
DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'NZD')
DEFAULT_TAX_RATE = Decimal(os.environ.get('DEFAULT_TAX_RATE', '0.15'))
ALLOW_OVERPAYMENT = _flag('ALLOW_OVERPAYMENT', 'true')

# Server
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
