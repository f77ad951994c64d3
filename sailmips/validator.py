"""Semantic validation of loaded IR modules."""
from . import ir
from .errors import LoaderError


class ValidationError(LoaderError):
    """Exception raised for validation errors."""

    def __init__(self, errors):
        message = errors[0] if len(errors) == 1 else f"{len(errors)} errors:\n  " + "\n  ".join(errors)
        super().__init__(message)
        self.errors = list(errors)


class Validator:
    """Validates a module before translation.

    Errors describe IR the translator would reject or mistranslate; warnings
    describe IR that is legal but probably not intended.
    """

    def __init__(self, module: ir.Module):
        self.module = module
        self.errors = []
        self.warnings = []

    def validate(self):
        """Run all validation checks on the module. Returns the list of warnings."""
        entry = self.module.functions.get(self.module.entry_name) if self.module.entry_name else None
        if entry is not None and not entry.is_defined:
            self.errors.append(f"entry point '@{entry.name}' has no body")

        for function in self.module.functions.values():
            self._validate_params(function)
            if function.is_defined:
                self._validate_function(function)

        if entry is not None:
            reachable = self._reachable_from(entry)
            for function in self.module.functions.values():
                if function.is_defined and function.name not in reachable:
                    self.warnings.append(f"function '@{function.name}' is never called")

        if self.errors:
            raise ValidationError(self.errors)
        return self.warnings

    def _where(self, function, instr=None):
        line = instr.line if instr is not None and instr.line is not None else function.line
        return f"'@{function.name}'" + (f" (line {line})" if line is not None else "")

    def _validate_params(self, function):
        seen = set()
        for param in function.signature.params:
            if param.name in seen:
                self.errors.append(f"parameter {param.name} declared twice in {self._where(function)}")
            seen.add(param.name)

    def _validate_function(self, function):
        defined = {p.name for p in function.signature.params}
        used = {}
        for block in function.blocks:
            for instr in block.instructions:
                defined.update(instr.results)
                for vreg in instr.uses():
                    used.setdefault(vreg, instr)

        for vreg, instr in used.items():
            if vreg not in defined:
                self.errors.append(f"value {vreg} is used but never defined in {self._where(function, instr)}")

        for vreg in sorted(defined - set(used) - {p.name for p in function.signature.params}, key=str):
            self.warnings.append(f"value {vreg} is never used in {self._where(function)}")

        for block in function.blocks:
            for instr in block.instructions[:-1]:
                if instr.is_terminator:
                    self.errors.append(f"'{instr.opcode}' must end its block in {self._where(function, instr)}")
            for instr in block.instructions:
                self._validate_instr(function, instr)

        last = function.blocks[-1] if function.blocks else None
        if function.signature.results and (last is None or last.terminator is None):
            self.errors.append(f"control reaches the end of {self._where(function)} without returning a value")

        for index in self._unreachable_blocks(function):
            name = function.blocks[index].name
            self.warnings.append(f"block '{name}' in {self._where(function)} is unreachable")

    def _validate_instr(self, function, instr):
        op = instr.base
        if op == 'call':
            if not instr.operands or not isinstance(instr.operands[0], ir.SymbolRef):
                self.errors.append(f"call target must be a function symbol in {self._where(function, instr)}")
                return
            callee = self.module.functions.get(instr.operands[0].name)
            if callee is None:
                self.errors.append(f"call to undefined function '@{instr.operands[0].name}' in {self._where(function, instr)}")
                return
            args = len(instr.operands) - 1
            params = len(callee.signature.params)
            if args != params:
                self.errors.append(
                    f"'@{callee.name}' takes {params} argument(s) but {args} given in {self._where(function, instr)}")
            if len(instr.results) > len(callee.signature.results):
                self.errors.append(
                    f"'@{callee.name}' returns {len(callee.signature.results)} value(s) "
                    f"but {len(instr.results)} expected in {self._where(function, instr)}")
        elif op == 'ret':
            expected = len(function.signature.results)
            if len(instr.operands) != expected:
                self.errors.append(
                    f"'ret' with {len(instr.operands)} value(s) in {self._where(function, instr)}, "
                    f"which returns {expected}")
        elif op in ('br', 'br_if'):
            block_operands = instr.operands[-1:] if op == 'br' else instr.operands[1:]
            if not instr.operands or not all(isinstance(o, ir.BlockRef) for o in block_operands):
                self.errors.append(f"'{op}' needs block targets in {self._where(function, instr)}")

    def _unreachable_blocks(self, function):
        blocks = function.blocks
        if not blocks:
            return []
        seen = {0}
        stack = [0]
        while stack:
            index = stack.pop()
            terminator = blocks[index].terminator
            if terminator is None:
                successors = [index + 1] if index + 1 < len(blocks) else []
            else:
                successors = [function.block_index(name) for name in terminator.targets()]
            for succ in successors:
                if succ not in seen:
                    seen.add(succ)
                    stack.append(succ)
        return [i for i in range(len(blocks)) if i not in seen]

    def _reachable_from(self, entry):
        """Names of functions reachable through calls from entry."""
        seen = {entry.name}
        stack = [entry]
        while stack:
            function = stack.pop()
            for block in function.blocks or []:
                for instr in block.instructions:
                    if instr.base == 'call' and instr.operands and isinstance(instr.operands[0], ir.SymbolRef):
                        callee = self.module.functions.get(instr.operands[0].name)
                        if callee is not None and callee.name not in seen:
                            seen.add(callee.name)
                            stack.append(callee)
        return seen
