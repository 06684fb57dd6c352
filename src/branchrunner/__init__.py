"""BranchRunner - build, run and screenshot every pushed branch of a repository."""

from importlib.metadata import PackageNotFoundError, version

from branchrunner.schemas import BuildJob, ProfileKind, ProfileResult, RepoConfig, RunRecord

__all__ = ["BuildJob", "ProfileKind", "ProfileResult", "RepoConfig", "RunRecord"]

try:
    __version__ = version("branchrunner")
except PackageNotFoundError:
    __version__ = "0.0.0"
