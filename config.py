import os


class Config:
    """Defaults for the market and its web front; every value can come from the environment."""
    SECRET_KEY = os.getenv("SECRET_KEY", "your_secret_key")  # In production, load from env
    PORT = int(os.getenv("PORT", 8080))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Simulated payment latency in seconds
    PAYMENT_DELAY = float(os.getenv("PAYMENT_DELAY", 0.01))

    # Reported by the health check only; nothing is saved to it
    DATA_FILE = os.getenv("DATA_FILE", "bookmarket.dat")

    LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))
    FAST_SELLING_THRESHOLD = int(os.getenv("FAST_SELLING_THRESHOLD", 3))
    BEST_SELLER_LIMIT = 5

    SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "1") == "1"


class TestConfig(Config):
    TESTING = True
    PAYMENT_DELAY = 0
    SEED_DEMO_DATA = False
    LOG_LEVEL = "WARNING"
