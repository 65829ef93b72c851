class CatalogError(Exception):
    """Base class for failures raised by the persistence layer."""


class ValidationFailed(CatalogError):
    def __init__(self, errors: list[tuple[str, str]], location: str = "body"):
        self.errors = list(errors)
        self.location = location
        super().__init__("; ".join(f"{field}: {message}" for field, message in self.errors))


class RecordNotFound(CatalogError):
    pass


class EditConflict(CatalogError):
    """The row was deleted or its version moved on since it was read."""


class QueryTimeout(CatalogError):
    pass


class StorageError(CatalogError):
    pass
