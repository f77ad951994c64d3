"""Errors raised while assembling a SAILAR module into MIPS32 assembly."""


class AssemblerError(Exception):
    """Base class for every error that aborts an assembler run."""
    pass


class MissingEntryPointFunction(AssemblerError):
    """The module does not define an entry point function."""

    def __init__(self, module_name=None):
        if module_name:
            message = f"the entry point function was not defined in module '{module_name}'"
        else:
            message = "the entry point function was not defined"
        super().__init__(message)
        self.module_name = module_name


class LoaderError(AssemblerError):
    """The IR could not be parsed or one of its references could not be resolved."""

    def __init__(self, message, line=None, column=None):
        if line is not None:
            location = f"line {line}" if column is None else f"line {line}, column {column}"
            message = f"{location}: {message}"
        super().__init__(message)
        self.line = line
        self.column = column


class InputOutputError(AssemblerError):
    """Reading the input module or writing the output assembly failed."""

    def __init__(self, path, cause):
        super().__init__(f"{path}: {cause.strerror or cause}")
        self.path = path
        self.cause = cause


class UnsupportedOperation(AssemblerError):
    """An IR construct has no lowering to MIPS32."""

    def __init__(self, message, function=None):
        if function:
            message = f"in function '{function}': {message}"
        super().__init__(message)
        self.function = function


class LabelCollision(AssemblerError):
    """Two distinct symbols were mangled to the same assembly label."""

    def __init__(self, label, first, second):
        super().__init__(f"label '{label}' generated for both {first} and {second}")
        self.label = label
        self.first = first
        self.second = second
