"""Utilities for building llama-server commands."""

# Fixed context window; prompts used by the supervisor are short
CONTEXT_SIZE = 2048


def build_llama_server_command(
    binary_path: str,
    model_path: str,
    *,
    port: int,
    gpu_layers: int,
    parallel: int,
    host: str = "127.0.0.1",
) -> list[str]:
    """Build the llama-server argv.

    All values are derived by the supervisor (GPU layers from the model size,
    parallel slots from the concurrency setting); call sites never hand-edit
    arguments.
    """
    return [
        binary_path,
        "-m",
        model_path,
        "--host",
        host,
        "--port",
        str(port),
        "--ctx-size",
        str(CONTEXT_SIZE),
        "--n-gpu-layers",
        str(gpu_layers),
        "--parallel",
        str(parallel),
    ]
