import os


class Settings:
    MONGODB_URL: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    MONGODB_DB: str = os.getenv("MONGODB_DB", "chatsync")
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    FCM_SERVICE_ACCOUNT_FILE: str = os.getenv("FCM_SERVICE_ACCOUNT_FILE", "")
    FCM_PROJECT_ID: str = os.getenv("FCM_PROJECT_ID", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    APP_NAME: str = "chatsync"
    VERSION: str = "0.1.0"


settings = Settings()
