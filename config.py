import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV != "production"
    PORT = int(os.getenv("PORT", "4000"))

    # MongoDB
    MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "hackhost")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "change-this-in-production")
    JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
    RESET_TOKEN_TTL_MINUTES = 30

    # CORS / links
    CORS_ORIGIN = os.getenv("CORS_ORIGIN", "")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # SMTP
    SMTP_HOST = os.getenv("SMTP_HOST", "")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASS = os.getenv("SMTP_PASS", "")
    MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@example.com")

    # Cloudinary
    CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
    CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")
    UPLOAD_TIMEOUT_SECONDS = 30
    MAX_IMAGE_SIZE = 15 * 1024 * 1024  # 15MB

    # Payments
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")

    # Flask
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    @classmethod
    def cors_origins(cls):
        """Comma-separated CORS_ORIGIN as a list without trailing slashes."""
        return [o.strip().rstrip("/") for o in cls.CORS_ORIGIN.split(",") if o.strip()]
