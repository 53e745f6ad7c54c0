from .executions import build_execution_routes

__all__ = ["build_execution_routes"]
