from pydantic_settings import BaseSettings
from typing import List, Literal


class AgentSettings(BaseSettings):

    api_base_url: str = "http://localhost:8000/api/v1"
    token: str = ""
    request_timeout: float = 10.0


    status_poll_interval: float = 2.0
    offer_poll_interval: float = 5.0
    answer_poll_interval: float = 5.0
    ice_poll_interval: float = 2.0


    face_check_interval: float = 1.0
    blur_cooldown: float = 3.0
    violation_limit: int = 3
    # "agent": counter starts at zero for every agent lifetime
    # "event_log": counter is seeded from the session's persisted violations
    violation_counter_source: Literal["agent", "event_log"] = "agent"


    backoff_factor: float = 2.0
    backoff_max_interval: float = 30.0
    max_consecutive_failures: int = 10


    stun_servers: List[str] = ["stun:stun.l.google.com:19302"]
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480


    navigation_grace_delay: float = 2.0


    class Config:
        env_prefix = "PROCTOR_AGENT_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
