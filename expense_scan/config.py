from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # App
    APP_NAME: str = "ExpenseScan"
    DEBUG: bool = True

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Recognition mode used when the caller does not pick one (auto/offline/online)
    OCR_MODE: str = "auto"
    DEFAULT_UI_LANGUAGE: str = "de"

    # Remote OCR (ocr.space compatible)
    OCR_API_KEY: str = ""
    OCR_API_URL: str = "https://api.ocr.space/parse/image"
    OCR_ENGINE_VERSION: str = "2"
    OCR_REMOTE_TIMEOUT: float = 60.0
    OCR_CONNECTIVITY_URL: str = "https://api.ocr.space"
    OCR_CONNECTIVITY_TIMEOUT: float = 3.0

    # Local OCR
    TESSERACT_CMD: str = "tesseract"
    OCR_LANG: str = "deu+ita+eng"
    OCR_TESSDATA_DIR: Optional[str] = None

    # Sources
    PDF_RENDER_SCALE: float = 2.0
    OCR_FILE_MAX_BYTES: int = 12 * 1024 * 1024

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
