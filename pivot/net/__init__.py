from .executor import HttpProbeExecutor, ProbeExecutor, build_request, detect_error_class

__all__ = ["HttpProbeExecutor", "ProbeExecutor", "build_request", "detect_error_class"]
