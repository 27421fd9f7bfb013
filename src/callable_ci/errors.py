"""Exceptions raised by callable-ci."""


class CallableCIError(Exception):
    """Base class for all callable-ci errors."""


class TemplateError(CallableCIError):
    """A bundled or user-supplied template is malformed."""


class UnknownWorkflowError(CallableCIError):
    """No template matches the requested name or path."""


class ExpressionError(CallableCIError):
    """A ${{ }} expression could not be parsed or evaluated."""


class ContractError(CallableCIError):
    """An invocation does not satisfy a template's input/secret contract.

    ``errors`` holds one ``(field, message)`` pair per problem so callers
    can report every missing or mismatched key at once.
    """

    def __init__(self, workflow, errors):
        self.workflow = workflow
        self.errors = list(errors)
        details = "; ".join(f"{field}: {msg}" for field, msg in self.errors)
        super().__init__(f"{workflow}: {details}")

    @property
    def fields(self):
        return [field for field, _ in self.errors]
