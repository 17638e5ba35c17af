from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    port: int = 8003
    data_dir: str = "/data"
    log_level: str = "INFO"

    # алгоритм
    similarity_threshold: int = Field(default=60, ge=0, le=100)
    fast_compare_mode: bool = False
    fast_mode_min_submissions: int = 20
    fast_mode_score_floor: float = 10.0
    shingle_size: int = 5
    minhash_permutations: int = 64
    lsh_bands: int = 16

    # фоновая генерация отчётов
    generation_workers: int = 2
    generation_timeout_seconds: float | None = None

    # AI-анализ пары (OpenAI-совместимый chat/completions)
    ai_base_url: str = "https://api.siliconflow.cn/v1"
    ai_api_key: str = ""
    ai_model: str = "Qwen/Qwen2.5-Coder-7B-Instruct"
    ai_timeout_seconds: float = 30.0
    ai_retry_times: int = 3
    ai_retry_delay_seconds: float = 1.0

    @property
    def db_url(self) -> str:
        return f"sqlite:///{self.data_dir.rstrip('/')}/plagiarism_service.db"


settings = Settings()
