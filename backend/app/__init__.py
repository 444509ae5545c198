from .app import CarReportApp

__all__ = ["CarReportApp"]
