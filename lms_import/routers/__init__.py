from lms_import.routers.drive_import import router as drive_import_router

__all__ = ["drive_import_router"]
