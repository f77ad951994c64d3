import sys

from . import ir
from . import codegen_utils
from .errors import UnsupportedOperation
from .instructions import (
    ARGUMENT_REGISTERS, CALLEE_SAVED, RESULT_REGISTERS, Register as Reg,
    Break, Branch, BranchZero, Div, IType, Jump, JumpAndLink, JumpRegister, Li, Load,
    LocalLabel, Move, MoveFrom, Nop, RType, Shift, Store, Syscall,
)
from .register_allocator import RegisterAllocator, SpillSlot, analyze_liveness, build_intervals


WORD_SIZE = 4

# Stack space a caller reserves for its callee's register arguments (O32)
ARGUMENT_HOME_SIZE = 16

# Largest frame addressable with 16-bit signed offsets from $sp
MAX_FRAME_SIZE = 0x7FFF

BINARY_OPS = {
    'add': 'addu', 'sub': 'subu', 'mul': 'mul',
    'and': 'and', 'or': 'or', 'xor': 'xor',
    'shl': 'sllv', 'shr': 'srav', 'shru': 'srlv',
    'lt': 'slt', 'ltu': 'sltu',
}

# Forms taking the right operand as an immediate: (mnemonic, immediate range check)
IMMEDIATE_FORMS = {
    'add': ('addiu', codegen_utils.fits_signed16),
    'and': ('andi', codegen_utils.fits_unsigned16),
    'or': ('ori', codegen_utils.fits_unsigned16),
    'xor': ('xori', codegen_utils.fits_unsigned16),
    'lt': ('slti', codegen_utils.fits_signed16),
    'ltu': ('sltiu', codegen_utils.fits_signed16),
}

# a > b is b < a; a <= b is !(b < a); a >= b is !(a < b)
SWAPPED_COMPARISONS = {
    'gt': ('slt', True, False), 'gtu': ('sltu', True, False),
    'le': ('slt', True, True), 'leu': ('sltu', True, True),
    'ge': ('slt', False, True), 'geu': ('sltu', False, True),
}

DIVISION_OPS = {
    'div': ('div', 'mflo'), 'divu': ('divu', 'mflo'),
    'rem': ('div', 'mfhi'), 'remu': ('divu', 'mfhi'),
}

# Operations whose meaning depends on signedness, mapped to their unsigned form
UNSIGNED_FORMS = {
    'lt': 'ltu', 'gt': 'gtu', 'le': 'leu', 'ge': 'geu',
    'shr': 'shru', 'div': 'divu', 'rem': 'remu',
}

# Comparisons produce 0 or 1, which is valid in every type
COMPARISONS = {'lt', 'ltu', 'eq', 'ne'} | set(SWAPPED_COMPARISONS)

# Operations that may carry a type suffix
TYPED_OPS = ({'const', 'copy', 'neg', 'not', 'eq', 'ne', 'load', 'store'}
             | set(BINARY_OPS) | set(SWAPPED_COMPARISONS) | set(DIVISION_OPS))

WORD_BITS = 32

LOAD_OPS = {'i8': 'lb', 'u8': 'lbu', 'i16': 'lh', 'u16': 'lhu', 'i32': 'lw', 'u32': 'lw'}
STORE_OPS = {'i8': 'sb', 'u8': 'sb', 'i16': 'sh', 'u16': 'sh', 'i32': 'sw', 'u32': 'sw'}

SCRATCH_A = Reg.T8
SCRATCH_B = Reg.T9


class FunctionTranslator:
    """Lowers the body of one IR function to MIPS32 instructions.

    Callees referenced by call instructions are collected in `callees` so the
    caller can schedule them for translation.
    """

    def __init__(self, function: ir.Function, label: str, allocator=None):
        self.print_debug = False
        self.function = function
        self.label = label
        self.allocator = allocator if allocator is not None else RegisterAllocator()
        self.instructions = []
        self.callees = []
        self.locations = {}
        self.frame_size = 0
        self.has_calls = False
        self.spill_base = 0
        self.alloca_offsets = {}
        self.saved_registers = []
        self.saved_offsets = {}
        self.ra_offset = None
        self.block_labels = {}

    def emit(self, instruction):
        self.instructions.append(instruction)

    def _unsupported(self, message, instr=None):
        if instr is not None:
            message = f"'{instr}': {message}"
            if instr.line is not None:
                message = f"line {instr.line}: {message}"
        return UnsupportedOperation(message, function=self.function.name)

    def _check_word_type(self, typename, what):
        if ir.type_size(typename) > WORD_SIZE:
            raise self._unsupported(f"{what} of type {typename} is wider than the 32-bit target word")

    def _check_signature(self):
        signature = self.function.signature
        for param in signature.params:
            self._check_word_type(param.ptype, f"parameter {param.name}")
        for result in signature.results:
            self._check_word_type(result, "result")
        if len(signature.results) > len(RESULT_REGISTERS):
            raise self._unsupported(f"{len(signature.results)} results, at most {len(RESULT_REGISTERS)} are supported")

    def translate(self):
        """Translate the whole function; returns the instruction list.

        Raises UnsupportedOperation without producing any instructions if a
        construct cannot be lowered.
        """
        function = self.function
        if not function.is_defined:
            raise self._unsupported("function is declared but has no body")
        self._check_signature()

        blocks = function.blocks
        targets = set()
        for block in blocks:
            for instr in block.instructions[:-1]:
                if instr.is_terminator:
                    raise self._unsupported("instruction after the end of a block", instr)
            if block.terminator is not None:
                targets.update(function.block_index(name) for name in block.terminator.targets())

        if blocks:
            liveness = analyze_liveness(function)
            params = {p.name for p in function.signature.params}
            undefined = liveness.live_in[0] - params
            if undefined:
                names = ", ".join(sorted(str(v) for v in undefined))
                raise self._unsupported(f"use of undefined value(s) {names}")
            intervals = build_intervals(function, liveness)
            self.allocator.print_debug = self.print_debug
            self.locations = self.allocator.allocate(intervals)
        else:
            self.allocator.reset()
            self.locations = {}

        for index in sorted(targets):
            self.block_labels[blocks[index].name] = codegen_utils.local_label(self.label, index)

        self._layout_frame()
        self._emit_prologue()
        for index, block in enumerate(blocks or []):
            if index in targets:
                self.emit(LocalLabel(self.block_labels[block.name]))
            for instr in block.instructions:
                self._emit_instr(instr)
            if block.terminator is None and index == len(blocks) - 1:
                self._emit_implicit_return()
        if not blocks:
            self._emit_implicit_return()

        if self.print_debug:
            print(f"[DEBUG] {self.label}: {len(self.instructions)} instructions, frame {self.frame_size} bytes",
                  file=sys.stderr)
        return self.instructions

    # Frame layout, from $sp upwards:
    #   outgoing arguments | spill slots | alloca areas | saved $s registers | saved $ra
    def _layout_frame(self):
        max_args = None
        alloca_sizes = []
        for block in self.function.blocks or []:
            for instr in block.instructions:
                if instr.base == 'call':
                    self.has_calls = True
                    max_args = max(max_args or 0, len(instr.operands) - 1)
                elif instr.base == 'alloca':
                    alloca_sizes.append((instr, self._alloca_size(instr)))

        offset = 0
        if self.has_calls:
            offset = max(ARGUMENT_HOME_SIZE, WORD_SIZE * max_args)
        self.spill_base = offset
        offset += WORD_SIZE * self.allocator.spill_count
        for instr, size in alloca_sizes:
            self.alloca_offsets[id(instr)] = offset
            offset += codegen_utils.align(size, WORD_SIZE)
        self.saved_registers = [r for r in CALLEE_SAVED if r in self.allocator.used_callee_saved]
        for reg in self.saved_registers:
            self.saved_offsets[reg] = offset
            offset += WORD_SIZE
        if self.has_calls:
            self.ra_offset = offset
            offset += WORD_SIZE
        self.frame_size = codegen_utils.align(offset, 8)
        if self.frame_size > MAX_FRAME_SIZE:
            raise self._unsupported(f"stack frame of {self.frame_size} bytes exceeds the addressable range")

    def _alloca_size(self, instr):
        if len(instr.results) != 1 or len(instr.operands) != 1 or not isinstance(instr.operands[0], ir.Immediate):
            raise self._unsupported("expected %result = alloca <size>", instr)
        size = instr.operands[0].value
        if size < 0:
            raise self._unsupported("negative allocation size", instr)
        return size

    def _slot_offset(self, slot: SpillSlot):
        return self.spill_base + WORD_SIZE * slot.index

    def _emit_prologue(self):
        if self.frame_size:
            self.emit(IType('addiu', Reg.SP, Reg.SP, -self.frame_size))
        if self.ra_offset is not None:
            self.emit(Store('sw', Reg.RA, self.ra_offset, Reg.SP))
        for reg in self.saved_registers:
            self.emit(Store('sw', reg, self.saved_offsets[reg], Reg.SP))
        for index, param in enumerate(self.function.signature.params):
            if param.name not in self.locations:
                continue
            if index < len(ARGUMENT_REGISTERS):
                self._assign_from(param.name, ARGUMENT_REGISTERS[index])
            else:
                # Stack arguments sit in the caller's outgoing area, just above our frame
                reg = self._dest(param.name)
                self.emit(Load('lw', reg, self.frame_size + WORD_SIZE * index, Reg.SP))
                self._commit(param.name, reg)

    def _emit_epilogue(self):
        for reg in self.saved_registers:
            self.emit(Load('lw', reg, self.saved_offsets[reg], Reg.SP))
        if self.ra_offset is not None:
            self.emit(Load('lw', Reg.RA, self.ra_offset, Reg.SP))
        if self.frame_size:
            self.emit(IType('addiu', Reg.SP, Reg.SP, self.frame_size))
        self.emit(JumpRegister(Reg.RA))
        self.emit(Nop())

    def _emit_implicit_return(self):
        if self.function.signature.results:
            raise self._unsupported("control reaches the end of a function that returns values")
        self._emit_epilogue()

    # Operand access

    def _location(self, vreg):
        try:
            return self.locations[vreg]
        except KeyError:
            raise self._unsupported(f"use of undefined value {vreg}") from None

    def _read(self, operand, scratch, instr=None):
        """Return a register holding the operand, loading it into scratch if needed."""
        if isinstance(operand, ir.VReg):
            location = self._location(operand)
            if isinstance(location, SpillSlot):
                self.emit(Load('lw', scratch, self._slot_offset(location), Reg.SP))
                return scratch
            return location
        if isinstance(operand, ir.Immediate):
            if operand.value == 0:
                return Reg.ZERO
            self.emit(Li(scratch, self._word(operand.value, instr)))
            return scratch
        raise self._unsupported(f"operand '{operand}' is not a value", instr)

    def _read_into(self, operand, target, instr=None):
        """Place the operand's value in a specific register."""
        if isinstance(operand, ir.Immediate):
            self.emit(Li(target, self._word(operand.value, instr)))
            return
        if isinstance(operand, ir.VReg):
            location = self._location(operand)
            if isinstance(location, SpillSlot):
                self.emit(Load('lw', target, self._slot_offset(location), Reg.SP))
            else:
                self.emit(Move(target, location))
            return
        raise self._unsupported(f"operand '{operand}' is not a value", instr)

    def _word(self, value, instr=None):
        if not codegen_utils.fits_word(value):
            raise self._unsupported(f"immediate {value} does not fit in 32 bits", instr)
        return value

    def _dest(self, vreg):
        location = self._location(vreg)
        return SCRATCH_A if isinstance(location, SpillSlot) else location

    def _commit(self, vreg, reg):
        location = self._location(vreg)
        if isinstance(location, SpillSlot):
            self.emit(Store('sw', reg, self._slot_offset(location), Reg.SP))

    def _assign_from(self, vreg, source):
        location = self._location(vreg)
        if isinstance(location, SpillSlot):
            self.emit(Store('sw', source, self._slot_offset(location), Reg.SP))
        elif location != source:
            self.emit(Move(location, source))

    def _target_label(self, operand, instr):
        if not isinstance(operand, ir.BlockRef):
            raise self._unsupported(f"'{operand}' is not a block", instr)
        return self.block_labels[operand.name]

    # Instruction selection

    def _expect(self, instr, results, operands):
        if len(instr.results) != results or len(instr.operands) != operands:
            raise self._unsupported(f"expected {results} result(s) and {operands} operand(s)", instr)

    def _check_suffix(self, instr):
        suffix = instr.type_suffix
        if suffix is None:
            return
        if instr.base not in TYPED_OPS:
            raise self._unsupported(f"'{instr.base}' does not take a type suffix", instr)
        if suffix not in ir.INTEGER_TYPES:
            raise self._unsupported(f"unknown type suffix '{suffix}'", instr)
        if ir.type_size(suffix) > WORD_SIZE:
            raise self._unsupported(f"{suffix} values are wider than the 32-bit target word", instr)

    def _narrow(self, instr, reg):
        """Reduce a result to the range of the instruction's type.

        Sub-word values are kept zero-extended (unsigned) or sign-extended
        (signed) in their register, the same form lbu/lb and lhu/lh load.
        """
        suffix = instr.type_suffix
        if suffix is None or ir.type_size(suffix) >= WORD_SIZE:
            return
        bits = 8 * ir.type_size(suffix)
        if ir.is_signed(suffix):
            self.emit(Shift('sll', reg, reg, WORD_BITS - bits))
            self.emit(Shift('sra', reg, reg, WORD_BITS - bits))
        else:
            self.emit(IType('andi', reg, reg, (1 << bits) - 1))

    def _finish(self, instr, reg):
        self._narrow(instr, reg)
        self._commit(instr.results[0], reg)

    def _emit_instr(self, instr: ir.Instruction):
        op = instr.base
        if self.print_debug:
            print(f"[DEBUG] {self.label}: {instr}", file=sys.stderr)
        if op not in ('load', 'store'):
            self._check_suffix(instr)
            suffix = instr.type_suffix
            if suffix is not None and not ir.is_signed(suffix):
                op = UNSIGNED_FORMS.get(op, op)

        if op == 'const':
            self._expect(instr, 1, 1)
            value = instr.operands[0]
            if not isinstance(value, ir.Immediate):
                raise self._unsupported("const takes an integer", instr)
            d = self._dest(instr.results[0])
            self.emit(Li(d, self._word(value.value, instr)))
            self._finish(instr, d)
        elif op == 'copy':
            self._expect(instr, 1, 1)
            d = self._dest(instr.results[0])
            self._read_into(instr.operands[0], d, instr)
            self._finish(instr, d)
        elif op in BINARY_OPS:
            self._emit_binary(instr, op)
        elif op in SWAPPED_COMPARISONS:
            self._expect(instr, 1, 2)
            mnemonic, swap, negate = SWAPPED_COMPARISONS[op]
            a = self._read(instr.operands[0], SCRATCH_A, instr)
            b = self._read(instr.operands[1], SCRATCH_B, instr)
            d = self._dest(instr.results[0])
            self.emit(RType(mnemonic, d, b, a) if swap else RType(mnemonic, d, a, b))
            if negate:
                self.emit(IType('xori', d, d, 1))
            self._commit(instr.results[0], d)
        elif op in ('eq', 'ne'):
            self._expect(instr, 1, 2)
            a = self._read(instr.operands[0], SCRATCH_A, instr)
            b = self._read(instr.operands[1], SCRATCH_B, instr)
            d = self._dest(instr.results[0])
            self.emit(RType('xor', d, a, b))
            if op == 'eq':
                self.emit(IType('sltiu', d, d, 1))
            else:
                self.emit(RType('sltu', d, Reg.ZERO, d))
            self._commit(instr.results[0], d)
        elif op in DIVISION_OPS:
            self._expect(instr, 1, 2)
            divide, move_from = DIVISION_OPS[op]
            a = self._read(instr.operands[0], SCRATCH_A, instr)
            b = self._read(instr.operands[1], SCRATCH_B, instr)
            d = self._dest(instr.results[0])
            self.emit(Div(divide, a, b))
            self.emit(MoveFrom(move_from, d))
            self._finish(instr, d)
        elif op in ('neg', 'not'):
            self._expect(instr, 1, 1)
            a = self._read(instr.operands[0], SCRATCH_A, instr)
            d = self._dest(instr.results[0])
            if op == 'neg':
                self.emit(RType('subu', d, Reg.ZERO, a))
            else:
                self.emit(RType('nor', d, a, Reg.ZERO))
            self._finish(instr, d)
        elif op == 'alloca':
            d = self._dest(instr.results[0])
            self.emit(IType('addiu', d, Reg.SP, self.alloca_offsets[id(instr)]))
            self._commit(instr.results[0], d)
        elif op == 'load':
            self._emit_load(instr)
        elif op == 'store':
            self._emit_store(instr)
        elif op == 'call':
            self._emit_call(instr)
        elif op == 'syscall':
            self._emit_syscall(instr)
        elif op == 'br':
            self._expect(instr, 0, 1)
            self.emit(Jump(self._target_label(instr.operands[0], instr)))
            self.emit(Nop())
        elif op == 'br_if':
            self._expect(instr, 0, 3)
            condition, then_block, else_block = instr.operands
            c = self._read(condition, SCRATCH_A, instr)
            self.emit(BranchZero('bnez', c, self._target_label(then_block, instr)))
            self.emit(Nop())
            self.emit(Jump(self._target_label(else_block, instr)))
            self.emit(Nop())
        elif op == 'ret':
            self._emit_return(instr)
        elif op == 'trap':
            self._expect(instr, 0, 0)
            self.emit(Break())
        else:
            raise self._unsupported("no lowering for this opcode", instr)

    def _emit_binary(self, instr, op):
        self._expect(instr, 1, 2)
        left, right = instr.operands
        d_vreg = instr.results[0]
        immediate_form = IMMEDIATE_FORMS.get(op)
        if (immediate_form and isinstance(right, ir.Immediate) and right.value != 0
                and immediate_form[1](right.value)):
            a = self._read(left, SCRATCH_A, instr)
            d = self._dest(d_vreg)
            self.emit(IType(immediate_form[0], d, a, right.value))
        else:
            a = self._read(left, SCRATCH_A, instr)
            b = self._read(right, SCRATCH_B, instr)
            d = self._dest(d_vreg)
            self.emit(RType(BINARY_OPS[op], d, a, b))
        if op in COMPARISONS:
            self._commit(d_vreg, d)
        else:
            self._finish(instr, d)

    def _memory_operand(self, instr, base_operand, offset_operand):
        """Return (base register, 16-bit offset) for a load or store address."""
        base = self._read(base_operand, SCRATCH_B, instr)
        offset = 0
        if offset_operand is not None:
            if not isinstance(offset_operand, ir.Immediate):
                raise self._unsupported("memory offset must be an integer", instr)
            offset = offset_operand.value
        if not codegen_utils.fits_signed16(offset):
            self.emit(Li(SCRATCH_A, self._word(offset, instr)))
            self.emit(RType('addu', SCRATCH_B, base, SCRATCH_A))
            return SCRATCH_B, 0
        return base, offset

    def _memory_type(self, instr, table):
        typename = instr.type_suffix or 'i32'
        if typename not in ir.INTEGER_TYPES:
            raise self._unsupported(f"unknown type suffix '{typename}'", instr)
        if typename not in table:
            raise self._unsupported(f"{typename} values are wider than the 32-bit target word", instr)
        return table[typename]

    def _emit_load(self, instr):
        if len(instr.results) != 1 or len(instr.operands) not in (1, 2):
            raise self._unsupported("expected %result = load.<type> %address[, offset]", instr)
        mnemonic = self._memory_type(instr, LOAD_OPS)
        offset_operand = instr.operands[1] if len(instr.operands) == 2 else None
        base, offset = self._memory_operand(instr, instr.operands[0], offset_operand)
        d = self._dest(instr.results[0])
        self.emit(Load(mnemonic, d, offset, base))
        self._commit(instr.results[0], d)

    def _emit_store(self, instr):
        if instr.results or len(instr.operands) not in (2, 3):
            raise self._unsupported("expected store.<type> %address, value[, offset]", instr)
        mnemonic = self._memory_type(instr, STORE_OPS)
        offset_operand = instr.operands[2] if len(instr.operands) == 3 else None
        # Address first: it may need both scratch registers
        base, offset = self._memory_operand(instr, instr.operands[0], offset_operand)
        value = self._read(instr.operands[1], SCRATCH_A, instr)
        self.emit(Store(mnemonic, value, offset, base))

    def _emit_call(self, instr):
        if not instr.operands or not isinstance(instr.operands[0], ir.SymbolRef):
            raise self._unsupported("call target must be a function symbol", instr)
        callee = self.function.module.resolve_function(instr.operands[0].name)
        if not callee.is_defined:
            raise self._unsupported(f"call to '@{callee.name}', which has no definition", instr)
        args = instr.operands[1:]
        expected = len(callee.signature.params)
        if len(args) != expected:
            raise self._unsupported(f"'@{callee.name}' takes {expected} argument(s), got {len(args)}", instr)
        if len(instr.results) > min(len(callee.signature.results), len(RESULT_REGISTERS)):
            raise self._unsupported(f"'@{callee.name}' does not return {len(instr.results)} value(s)", instr)

        # Stack arguments first: loading them may use scratch registers only
        for index in range(len(ARGUMENT_REGISTERS), len(args)):
            value = self._read(args[index], SCRATCH_A, instr)
            self.emit(Store('sw', value, WORD_SIZE * index, Reg.SP))
        for index, arg in enumerate(args[:len(ARGUMENT_REGISTERS)]):
            self._read_into(arg, ARGUMENT_REGISTERS[index], instr)

        callee_label = codegen_utils.create_function_label(callee.full_symbol())
        self.emit(JumpAndLink(callee_label))
        self.emit(Nop())
        for vreg, reg in zip(instr.results, RESULT_REGISTERS):
            self._assign_from(vreg, reg)
        if all(known is not callee for known in self.callees):
            self.callees.append(callee)

    def _emit_syscall(self, instr):
        if not instr.operands or not isinstance(instr.operands[0], ir.Immediate):
            raise self._unsupported("syscall needs a service number", instr)
        args = instr.operands[1:]
        if len(args) > len(ARGUMENT_REGISTERS) or len(instr.results) > 1:
            raise self._unsupported("syscall takes at most four arguments and returns at most one value", instr)
        for index, arg in enumerate(args):
            self._read_into(arg, ARGUMENT_REGISTERS[index], instr)
        self.emit(Li(Reg.V0, self._word(instr.operands[0].value, instr)))
        self.emit(Syscall())
        for vreg in instr.results:
            self._assign_from(vreg, Reg.V0)

    def _emit_return(self, instr):
        expected = len(self.function.signature.results)
        if instr.results or len(instr.operands) != expected:
            raise self._unsupported(f"function returns {expected} value(s)", instr)
        for operand, reg in zip(instr.operands, RESULT_REGISTERS):
            self._read_into(operand, reg, instr)
        self._emit_epilogue()
