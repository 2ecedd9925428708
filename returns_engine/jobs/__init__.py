from returns_engine.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler

__all__ = ["scheduler", "start_scheduler", "shutdown_scheduler"]
