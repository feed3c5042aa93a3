"""Queue agent: polls a job queue and drives each job through a browser executor."""

__version__ = "0.1.0"
