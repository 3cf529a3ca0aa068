from omnigen.models.job import Job, JobEvent

__all__ = ["Job", "JobEvent"]
