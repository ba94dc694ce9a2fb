class GameError(Exception):
    """Base for every failure the settlement core reports back to its caller.

    ``code`` is the machine-readable error string put on the wire, ``kind`` names the
    taxonomy bucket and ``status`` is the HTTP status the server answers with.
    """

    kind = "error"
    status = 500
    code = "error"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "kind": self.kind, "message": self.message}


class ConfigurationError(GameError):
    kind = "configuration"
    status = 422
    code = "model_unusable"


class ValidationError(GameError):
    kind = "validation"
    status = 400
    code = "invalid_request"


class NotFoundError(GameError):
    kind = "not_found"
    status = 404
    code = "round_not_found"


class ConflictError(GameError):
    kind = "conflict"
    status = 409
    code = "round_settled"

    def __init__(self, message: str = "", code: str | None = None, result=None) -> None:
        super().__init__(message, code)
        self.result = result

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.result is not None:
            out["result"] = self.result.to_dict()
        return out


class PersistenceError(GameError):
    kind = "persistence"
    status = 500
    code = "persistence_failed"


STATUS_BY_KIND = {
    cls.kind: cls.status
    for cls in (ConfigurationError, ValidationError, NotFoundError, ConflictError, PersistenceError)
}
