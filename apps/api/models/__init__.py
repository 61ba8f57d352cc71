"""Models package."""

from .user import User
from .project import Project, ProjectAccess
from .project_asset import ProjectAsset
from .processing_job import ProcessingJob
