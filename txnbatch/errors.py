class PipelineError(RuntimeError):
    pass


class LoadError(PipelineError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot load {path}: {reason}")
        self.path = path
        self.reason = reason


class PersistenceError(PipelineError):
    pass


class QuarantineWriteError(PipelineError):
    pass


class JobCancelledError(PipelineError):
    pass
