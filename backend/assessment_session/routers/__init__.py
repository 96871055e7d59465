from assessment_session.routers import applications, dashboard, health, sessions

__all__ = [
    "applications",
    "dashboard",
    "health",
    "sessions",
]
