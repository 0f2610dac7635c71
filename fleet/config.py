from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    SERVICE_NAME: str = "photo-gallery"
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # Substrate
    COMPUTE_BACKEND: str = "memory"  # memory | docker
    ROUTER_BACKEND: str = "memory"  # memory | nginx
    PROBE_KIND: str = "http"  # http | tcp | command | static
    CONTAINER_PORT: int = 8000
    DOCKER_NETWORK: str | None = None
    NGINX_CONF_PATH: str = "nginx/conf.d/default.conf"
    NGINX_CONTAINER: str = "fleet-nginx"

    # Memory backend seed fleet
    INITIAL_VERSION: str = "v1"
    INITIAL_ARTIFACT: str = "registry.local/photo-gallery:v1"
    INITIAL_COUNT: int = 3

    # Health evaluation
    HEALTH_INTERVAL: float = 5.0
    HEALTH_TIMEOUT: float = 3.0
    HEALTHY_THRESHOLD: int = 2
    UNHEALTHY_THRESHOLD: int = 2
    PROBE_CONCURRENCY: int = 16
    READINESS_PATH: str = "/ready"
    HEALTH_COMMAND: str = "curl -sf http://{address}/ready"

    # Rollout
    RAMP_STEPS: list[int] = [10, 30, 60, 100]
    STEP_SOAK_DURATION: float = 60.0
    PROVISION_TIMEOUT: float = 300.0
    VERIFICATION_WINDOW: float = 120.0
    MIN_HEALTHY_FRACTION: float = 1.0
    ROUTING_CONVERGENCE_WINDOW: float = 5.0
    ROLLOUT_TICK: float = 1.0

    # Autoscaling
    MIN_CAPACITY: int = 2
    MAX_CAPACITY: int = 6
    SCALE_OUT_THRESHOLD: float = 70.0
    SCALE_IN_THRESHOLD: float = 30.0
    SCALE_OUT_EVALUATION_PERIODS: int = 3
    SCALE_IN_EVALUATION_PERIODS: int = 5
    SCALE_IN_COOLDOWN: float = 300.0
    SCALE_STEP: int = 1
    AUTOSCALER_TICK: float = 15.0
    LOAD_PATH: str = "/health/deep"
    LOAD_FIELD: str = "utilization"

    # Executor
    PROVIDER_RETRY_ATTEMPTS: int = 5
    PROVIDER_RETRY_BASE_DELAY: float = 0.5
    PROVIDER_RETRY_MAX_DELAY: float = 30.0

    class Config:
        env_prefix = "FLEET_"
        env_file = ".env"

    @field_validator("RAMP_STEPS")
    @classmethod
    def _steps_reach_full_traffic(cls, steps: list[int]) -> list[int]:
        if not steps:
            raise ValueError("RAMP_STEPS must not be empty")
        if any(b <= a for a, b in zip(steps, steps[1:])):
            raise ValueError(f"RAMP_STEPS must be strictly increasing: {steps}")
        if steps[0] <= 0 or steps[-1] != 100:
            raise ValueError(f"RAMP_STEPS must be within 1..100 and end at 100: {steps}")
        return steps

    @field_validator("MIN_HEALTHY_FRACTION")
    @classmethod
    def _fraction_in_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("MIN_HEALTHY_FRACTION must be within (0, 1]")
        return value

    @model_validator(mode="after")
    def _capacity_bounds(self):
        if self.MIN_CAPACITY < 1:
            raise ValueError("MIN_CAPACITY must be at least 1")
        if self.MIN_CAPACITY > self.MAX_CAPACITY:
            raise ValueError("MIN_CAPACITY must not exceed MAX_CAPACITY")
        if self.SCALE_IN_THRESHOLD >= self.SCALE_OUT_THRESHOLD:
            raise ValueError("SCALE_IN_THRESHOLD must be below SCALE_OUT_THRESHOLD")
        return self


settings = Settings()
