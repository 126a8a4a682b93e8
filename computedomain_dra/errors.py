class PermanentError(Exception):
    """
    An error that cannot be fixed by waiting.

    Callers that retry (the kubelet plugin and the work queue) stop as soon
    as they see one of these anywhere in an exception chain.
    """


class CheckpointNotFoundError(Exception):
    pass


class CorruptCheckpointError(Exception):
    pass


def is_permanent_error(exc):
    """
    Walk the exception chain looking for a PermanentError.
    """
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, PermanentError):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False
