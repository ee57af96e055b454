"""CGI generation pipeline.

Async job pipeline that turns a product photo and a scene into a generated
image or short video: job queue, stage orchestrator, provider task poller
and crash recovery, with state kept in PostgreSQL.
"""

from cgi_pipeline.models import Base, Job, Project, User

__all__ = [
    "Base",
    "Job",
    "Project",
    "User",
]
