from sqlalchemy import exc


class StorageError(Exception):
    """ A base class for all the storage-related errors of the control plane. """


class ConflictError(StorageError):
    """
    Raised when an entity was modified by someone else since it was loaded.

    The optimistic-concurrency check has failed: the caller must reload
    the entity and retry the step with the fresh state.
    """


class UniquenessViolation(StorageError):
    """
    Raised when an entity claims a target that is already claimed by another.

    It is not retried: it requires a change of the API object to re-attempt.
    """


class SchemaError(StorageError):
    """ Raised when the database is asked for something we do not understand. """


def is_unique_violation(e: exc.IntegrityError, *, column: str) -> bool:
    # E.g.: "UNIQUE constraint failed: applications.target_key"
    message = str(e.orig)
    return message.startswith('UNIQUE constraint failed') and f'.{column}' in message
