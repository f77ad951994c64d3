"""Register allocation for MIPS32 code generation."""
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from . import ir
from .instructions import CALLEE_SAVED, CALLER_SAVED, Register


@dataclass(frozen=True)
class SpillSlot:
    """A 4-byte frame slot holding a virtual register that got no physical register."""
    index: int


@dataclass
class LiveInterval:
    vreg: ir.VReg
    start: int
    end: int
    crosses_call: bool = False
    register: Optional[Register] = None
    spill_slot: Optional[SpillSlot] = None

    @property
    def location(self):
        return self.register if self.register is not None else self.spill_slot


@dataclass
class Liveness:
    """Block-level liveness plus the linear numbering used for intervals."""
    successors: List[List[int]]
    live_in: List[Set[ir.VReg]]
    live_out: List[Set[ir.VReg]]
    block_ranges: List[tuple]  # (first position, last position) per block
    positions: List[List[int]] = field(default_factory=list)  # position of each instruction
    call_positions: List[int] = field(default_factory=list)
    call_results: Dict[int, Set[ir.VReg]] = field(default_factory=dict)  # values each call defines


def block_successors(function: ir.Function) -> List[List[int]]:
    """Successor block indices; a block without a terminator falls through."""
    successors = []
    blocks = function.blocks
    for index, block in enumerate(blocks):
        terminator = block.terminator
        if terminator is None:
            successors.append([index + 1] if index + 1 < len(blocks) else [])
        elif terminator.base in ('br', 'br_if'):
            targets = []
            for name in terminator.targets():
                target = function.block_index(name)
                if target not in targets:
                    targets.append(target)
            successors.append(targets)
        else:
            successors.append([])
    return successors


def analyze_liveness(function: ir.Function) -> Liveness:
    blocks = function.blocks
    successors = block_successors(function)

    uses = []
    defs = []
    for block in blocks:
        used, defined = set(), set()
        for instr in block.instructions:
            for vreg in instr.uses():
                if vreg not in defined:
                    used.add(vreg)
            defined.update(instr.results)
        uses.append(used)
        defs.append(defined)

    live_in = [set() for _ in blocks]
    live_out = [set() for _ in blocks]
    changed = True
    while changed:
        changed = False
        for index in reversed(range(len(blocks))):
            out = set()
            for succ in successors[index]:
                out |= live_in[succ]
            new_in = uses[index] | (out - defs[index])
            if out != live_out[index] or new_in != live_in[index]:
                live_out[index] = out
                live_in[index] = new_in
                changed = True

    # Position 0 is the function entry, where parameters are defined
    position = 1
    block_ranges = []
    positions = []
    call_positions = []
    call_results = {}
    for block in blocks:
        first = position
        block_positions = []
        for instr in block.instructions:
            block_positions.append(position)
            if instr.base == 'call':
                call_positions.append(position)
                call_results[position] = set(instr.results)
            position += 1
        if not block.instructions:
            position += 1
        block_ranges.append((first, max(first, position - 1)))
        positions.append(block_positions)

    return Liveness(successors=successors, live_in=live_in, live_out=live_out,
                    block_ranges=block_ranges, positions=positions, call_positions=call_positions,
                    call_results=call_results)


def build_intervals(function: ir.Function, liveness: Liveness) -> Dict[ir.VReg, LiveInterval]:
    """One interval per virtual register, spanning every position it may hold a value."""
    points: Dict[ir.VReg, List[int]] = {}

    def touch(vreg, position):
        points.setdefault(vreg, []).append(position)

    for param in function.signature.params:
        touch(param.name, 0)
    for index, block in enumerate(function.blocks):
        first, last = liveness.block_ranges[index]
        for vreg in liveness.live_in[index]:
            touch(vreg, first)
        for vreg in liveness.live_out[index]:
            touch(vreg, last)
        for instr, position in zip(block.instructions, liveness.positions[index]):
            for vreg in instr.uses():
                touch(vreg, position)
            for vreg in instr.results:
                touch(vreg, position)

    intervals = {}
    for vreg, where in points.items():
        start, end = min(where), max(where)
        # A value starting at a call is live across it unless the call defines it,
        # as happens when the value flows into a block that begins with the call
        crosses = any(start < p < end or (p == start < end and vreg not in liveness.call_results[p])
                      for p in liveness.call_positions)
        intervals[vreg] = LiveInterval(vreg=vreg, start=start, end=end, crosses_call=crosses)
    return intervals


class RegisterAllocator:
    """Linear-scan register allocation with spilling to frame slots.

    Register roles for MIPS32 (O32):

    - $t0-$t7: caller-saved, handed out to values that are not live across a call
    - $s0-$s7: callee-saved, handed out to any value; a function that uses one
      saves and restores it in its prologue/epilogue
    - $t8-$t9: scratch for spilled operands and large immediates, never allocated
    - $v0-$v1, $a0-$a3: results and arguments, only used while marshalling
    - $zero, $at, $k0, $k1, $gp, $sp, $fp, $ra: reserved

    Values live across a call only ever receive callee-saved registers, so no
    caller-saved state has to be saved around calls.

    Spilling strategy:
    When no suitable register is free, the active interval (or the current one)
    that ends last is moved to a spill slot for its whole lifetime.
    """

    def __init__(self, caller_saved=CALLER_SAVED, callee_saved=CALLEE_SAVED):
        self.print_debug = False
        self.caller_saved = list(caller_saved)
        self.callee_saved = list(callee_saved)
        self.reset()

    def reset(self):
        """Reset all allocations (for a new function)."""
        self.free_caller = list(self.caller_saved)
        self.free_callee = list(self.callee_saved)
        self.active: List[LiveInterval] = []
        self.spill_count = 0
        self.used_callee_saved: Set[Register] = set()

    def _take(self, pool, interval):
        reg = pool.pop(0)
        interval.register = reg
        if reg in self.callee_saved:
            self.used_callee_saved.add(reg)
        self.active.append(interval)
        self.active.sort(key=lambda iv: iv.end)
        return reg

    def _release(self, reg):
        pool, order = (self.free_caller, self.caller_saved) if reg in self.caller_saved else (self.free_callee, self.callee_saved)
        pool.append(reg)
        pool.sort(key=order.index)

    def _new_spill_slot(self):
        slot = SpillSlot(self.spill_count)
        self.spill_count += 1
        return slot

    def _expire(self, position):
        for interval in list(self.active):
            if interval.end < position:
                self.active.remove(interval)
                self._release(interval.register)

    def _spill(self, interval):
        allowed = set(self.callee_saved) if interval.crosses_call else set(self.caller_saved) | set(self.callee_saved)
        candidates = [iv for iv in self.active if iv.register in allowed]
        victim = max(candidates, key=lambda iv: iv.end, default=None)
        if victim is not None and victim.end > interval.end:
            interval.register = victim.register
            victim.register = None
            victim.spill_slot = self._new_spill_slot()
            self.active.remove(victim)
            self.active.append(interval)
            self.active.sort(key=lambda iv: iv.end)
            if self.print_debug:
                print(f"[DEBUG] spill {victim.vreg} to slot {victim.spill_slot.index}, "
                      f"{interval.register} -> {interval.vreg}", file=sys.stderr)
        else:
            interval.spill_slot = self._new_spill_slot()
            if self.print_debug:
                print(f"[DEBUG] spill {interval.vreg} to slot {interval.spill_slot.index}", file=sys.stderr)

    def allocate(self, intervals: Dict[ir.VReg, LiveInterval]) -> Dict[ir.VReg, object]:
        """Assign a Register or SpillSlot to every interval.

        Returns a mapping vreg -> location.
        """
        self.reset()
        ordered = sorted(intervals.values(), key=lambda iv: (iv.start, iv.end, iv.vreg.name))
        for interval in ordered:
            self._expire(interval.start)
            if interval.crosses_call:
                pools = [self.free_callee]
            else:
                pools = [self.free_caller, self.free_callee]
            pool = next((p for p in pools if p), None)
            if pool is not None:
                reg = self._take(pool, interval)
                if self.print_debug:
                    print(f"[DEBUG] allocate {reg} to {interval.vreg} [{interval.start}, {interval.end}]", file=sys.stderr)
            else:
                self._spill(interval)
        return {vreg: interval.location for vreg, interval in intervals.items()}

    def get_allocation_summary(self):
        """Get human-readable summary of current allocations (for debugging)."""
        return {
            'active': [(str(iv.vreg), str(iv.register)) for iv in self.active],
            'caller_available': [str(r) for r in self.free_caller],
            'callee_available': [str(r) for r in self.free_callee],
            'callee_saved_used': sorted(str(r) for r in self.used_callee_saved),
            'spill_slots': self.spill_count,
        }
