from .prerequisites import PrerequisiteEngine, parse_prerequisites, check_prerequisites
from .firebase import FirebaseCourseService, PersistenceError, get_course_service
from .ingestion import IngestionOrchestrator, IngestionJob, JobState, JobAlreadyRunningError, run_ingestion
