"""Resource heuristics keyed to model size and task type.

Every function here is pure. Tier tables are ordered from the largest
threshold down; the first tier whose threshold the model reaches wins.
"""

from llm_supervisor.models import TaskType

MB_PER_GB = 1024

# Fixed headroom above the model size before the health monitor restarts the server
MEMORY_OVERHEAD_MB = 4096

# Seconds added to every generation estimate for prompt processing and HTTP
REQUEST_OVERHEAD_SECONDS = 5.0

# (minimum size in GB, GPU layers). Unified-memory systems OOM when too many
# layers of a huge model are pinned to the GPU.
GPU_LAYER_TIERS: tuple[tuple[float, int], ...] = (
    (40, 25),
    (20, 40),
    (10, 60),
    (5, 75),
    (0, 99),
)

# (minimum size in GB, tokens/sec, minimum request timeout s, model load timeout s)
SPEED_TIERS: tuple[tuple[float, float, float, float], ...] = (
    (20, 10.0, 90.0, 300.0),
    (10, 20.0, 45.0, 240.0),
    (5, 30.0, 30.0, 180.0),
    (0, 50.0, 15.0, 120.0),
)

TASK_MULTIPLIERS: dict[TaskType, float] = {
    TaskType.CLASSIFICATION: 1.0,
    TaskType.COMPLETION: 1.2,
    TaskType.EXPANSION: 1.5,
}


def _size_gb(size_mb: float) -> float:
    return size_mb / MB_PER_GB


def _speed_tier(size_mb: float) -> tuple[float, float, float, float]:
    size_gb = _size_gb(size_mb)
    for tier in SPEED_TIERS:
        if size_gb >= tier[0]:
            return tier
    return SPEED_TIERS[-1]


def gpu_layers(size_mb: float) -> int:
    """Number of layers to offload to the GPU for a model of this size."""
    size_gb = _size_gb(size_mb)
    for threshold, layers in GPU_LAYER_TIERS:
        if size_gb >= threshold:
            return layers
    return GPU_LAYER_TIERS[-1][1]


def tokens_per_second(size_mb: float) -> float:
    """Conservative generation speed estimate."""
    return _speed_tier(size_mb)[1]


def minimum_request_timeout(size_mb: float) -> float:
    """Lower bound for any request timeout, in seconds."""
    return _speed_tier(size_mb)[2]


def request_timeout(
    size_mb: float,
    task_type: TaskType,
    predicted_tokens: int,
    configured_timeout: float = 0.0,
) -> float:
    """Deadline in seconds for a single request.

    Args:
        size_mb: Model size in MB
        task_type: Kind of request (scales the estimate)
        predicted_tokens: Token budget of the request (n_predict)
        configured_timeout: User-configured floor in seconds

    Returns:
        max(configured_timeout, computed estimate)
    """
    estimate = predicted_tokens / tokens_per_second(size_mb) + REQUEST_OVERHEAD_SECONDS
    estimate = max(estimate, minimum_request_timeout(size_mb))
    computed = estimate * TASK_MULTIPLIERS.get(task_type, 1.0)
    return max(configured_timeout, computed)


def model_load_timeout(size_mb: float) -> float:
    """How long to wait for the model to load, in seconds.

    Loading is bound by disk and memory bandwidth rather than inference speed.
    """
    return _speed_tier(size_mb)[3]


def memory_ceiling(size_mb: float) -> float:
    """Resident memory (MB) above which the server is considered unhealthy."""
    return size_mb + MEMORY_OVERHEAD_MB
