from app.routers import content, github_releases, health

__all__ = [
    "content",
    "github_releases",
    "health",
]
