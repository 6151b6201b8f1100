from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    gemini_api_key: str = ""
    move_model: str = "gemini-2.5-flash"
    word_model: str = "gemini-2.5-flash"
    # Built-in word bank is used when the word model is unavailable
    word_bank_fallback: bool = True
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    # Game rules
    min_players: int = 2
    max_players: int = 10
    max_meetings_per_player: int = 3
    meeting_duration_seconds: float = 60.0
    recent_clue_window: int = 10

    # Bot pacing (emulates a human typing / deciding)
    bot_turn_delay_seconds: float = 1.5
    bot_vote_delay_min_seconds: float = 3.0
    bot_vote_delay_max_seconds: float = 12.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
