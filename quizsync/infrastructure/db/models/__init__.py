from .user_model import LocalUser, RemoteUser
from .subject_model import LocalSubject, RemoteSubject
from .question_model import LocalQuestion, RemoteQuestion
from .attempt_model import LocalQuizAttempt, RemoteQuizAttempt
from .sync_log_model import SyncLogModel
from .sync_queue_model import SyncQueueModel
from .sync_timestamp_model import SyncTimestampModel, GLOBAL_SYNC_KEY

LOCAL_MODELS = {
    "users": LocalUser,
    "subjects": LocalSubject,
    "questions": LocalQuestion,
    "quiz_attempts": LocalQuizAttempt,
}

REMOTE_MODELS = {
    "users": RemoteUser,
    "subjects": RemoteSubject,
    "questions": RemoteQuestion,
    "quiz_attempts": RemoteQuizAttempt,
}
