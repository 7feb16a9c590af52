from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Notion
    NOTION_TOKEN: str = ""
    NOTION_BASE_URL: str = "https://api.notion.com/v1"
    NOTION_VERSION: str = "2022-06-28"
    NOTION_TASKS_DATABASE_ID: Optional[str] = None
    NOTION_PROJECTS_DATABASE_ID: Optional[str] = None
    NOTION_TIME_LOGS_DATABASE_ID: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 120
    MIN_REQUEST_INTERVAL_SECONDS: float = 0.35

    # Task properties
    TASK_TITLE_PROPERTY: str = "Name"
    TASK_STATUS_PROPERTY: str = "Status"
    TASK_DATE_PROPERTY: str = "Date"
    TASK_URGENT_PROPERTY: Optional[str] = "Urgent"
    TASK_IMPORTANT_PROPERTY: Optional[str] = "Important"
    TASK_PROJECT_RELATION_PROPERTY: Optional[str] = "Projects"
    TASK_PARENT_PROPERTY: Optional[str] = "Parent Task"
    TASK_ID_PROPERTY: Optional[str] = "ID"
    TASK_URGENT_ACTIVE_VALUE: str = "Urgent"
    TASK_IMPORTANT_ACTIVE_VALUE: str = "Important"

    # Project properties
    PROJECT_TITLE_PROPERTY: str = "Name"
    PROJECT_STATUS_PROPERTY: Optional[str] = "Status"
    PROJECT_DESCRIPTION_PROPERTY: Optional[str] = "Description"
    PROJECT_START_DATE_PROPERTY: Optional[str] = "Start Date"
    PROJECT_END_DATE_PROPERTY: Optional[str] = "End Date"
    PROJECT_TAGS_PROPERTY: Optional[str] = "Tags"
    PROJECT_ID_PROPERTY: Optional[str] = "ID"

    # Time log properties
    TIME_LOG_TITLE_PROPERTY: str = "Name"
    TIME_LOG_STATUS_PROPERTY: Optional[str] = "Status"
    TIME_LOG_START_PROPERTY: Optional[str] = "Start Time"
    TIME_LOG_END_PROPERTY: Optional[str] = "End Time"
    TIME_LOG_TASK_PROPERTY: Optional[str] = "Task"
    TIME_LOG_ID_PROPERTY: Optional[str] = "ID"

    # Persistence
    DB_PATH: str = "/data/tasksync.sqlite"

    # Import Logic
    SYNC_RESOURCES: List[str] = ["tasks", "projects", "time_logs"]
    SYNC_INTERVAL_SECONDS: int = 300
    IMPORT_PAGE_SIZE: int = 25
    IMPORT_MAX_ATTEMPTS: int = 4
    IMPORT_BASE_BACKOFF_SECONDS: float = 1.0
    IMPORT_MAX_BACKOFF_SECONDS: float = 30.0

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def database_id(self, resource: str) -> Optional[str]:
        return {
            "tasks": self.NOTION_TASKS_DATABASE_ID,
            "projects": self.NOTION_PROJECTS_DATABASE_ID,
            "time_logs": self.NOTION_TIME_LOGS_DATABASE_ID,
        }.get(resource)

settings = Settings()
