#!/usr/bin/env python3
"""
MIPS Instruction Set Emulator (32-bit subset)
Walks each instruction through fetch, decode, execute, memory access and
write-back, reports per-cycle diagnostics and writes execution traces
"""

import sys
import struct
import argparse
from typing import Callable, Dict, List, Tuple, Optional

try:
    from elftools.common.exceptions import ELFError
    from elftools.elf.elffile import ELFFile
except ImportError:
    print("Error: pyelftools not installed. Install with: pip install pyelftools")
    sys.exit(1)


WORD_MASK = 0xFFFFFFFF
# Invalid-fetch marker and initial "no caller" return address
SENTINEL = 0xFFFFFFFF

MEM_WORDS = 1024 * 1024          # 4 MiB of byte-addressable space
STACK_POINTER = 0x1000000

REG_V0 = 2
REG_SP = 29
REG_RA = 31

REG_NAMES = [
    'zero', 'at', 'v0', 'v1', 'a0', 'a1', 'a2', 'a3',
    't0', 't1', 't2', 't3', 't4', 't5', 't6', 't7',
    's0', 's1', 's2', 's3', 's4', 's5', 's6', 's7',
    't8', 't9', 'k0', 'k1', 'gp', 'sp', 'fp', 'ra',
]

# Instruction formats, in instr_count order
R_TYPE = 'R'
I_TYPE = 'I'
J_TYPE = 'J'
UNKNOWN_TYPE = 'Unknown'
TYPE_INDEX = {R_TYPE: 0, I_TYPE: 1, J_TYPE: 2}

OP_SPECIAL = 0x00
OP_J = 0x02
OP_JAL = 0x03
OP_ADDI = 0x08
OP_LW = 0x23
OP_SW = 0x2B

FUNCT_JR = 0x08
FUNCT_ADD = 0x20

# Stages
FETCH = 'fetch'
DECODE = 'decode'
EXECUTE = 'execute'
MEMORY = 'memory'
WRITE_BACK = 'write-back'
STAGES = (FETCH, DECODE, EXECUTE, MEMORY, WRITE_BACK)

# Diagnostic kinds
INFO = 'info'
SKIP = 'skip'
FAULT = 'fault'

# Halt reasons
HALT_ZERO_WORD = 'zero-word'
HALT_SENTINEL_PC = 'sentinel-pc'
HALT_PC_RANGE = 'pc-out-of-range'
HALT_RETURN = 'return-to-caller'
HALT_CYCLE_LIMIT = 'cycle-limit'

IMAGE_FORMATS = ['auto', 'bin', 'hex', 'elf']
BYTE_ORDERS = {'native': '=I', 'little': '<I', 'big': '>I'}


def sign_extend(value: int, bits: int) -> int:
    """Sign extend value to 32 bits"""
    sign_bit = 1 << (bits - 1)
    if value & sign_bit:
        return value | (~((1 << bits) - 1) & WORD_MASK)
    return value & ((1 << bits) - 1)


def reg_name(reg: int) -> str:
    """Conventional register name ($zero-$ra)"""
    return f"${REG_NAMES[reg]}"


class RegisterFile:
    """32 MIPS general purpose registers"""
    def __init__(self, hardwire_zero: bool = False):
        self.regs = [0] * 32
        # $zero is only forced to 0 on request
        self.hardwire_zero = hardwire_zero

    def read(self, reg: int) -> int:
        return self.regs[reg]

    def write(self, reg: int, value: int) -> bool:
        """Write register value, returns False when the write was dropped"""
        if reg == 0 and self.hardwire_zero:
            return False
        self.regs[reg] = value & WORD_MASK
        return True


class Memory:
    """Fixed-capacity word memory, addressed by byte"""
    def __init__(self, depth: int = MEM_WORDS):
        self.depth = depth
        self.words = [0] * depth

    @property
    def size(self) -> int:
        """Capacity in bytes"""
        return self.depth * 4

    def in_range(self, addr: int) -> bool:
        return 0 <= addr < self.size

    def read_word(self, addr: int) -> int:
        return self.words[addr // 4]

    def write_word(self, addr: int, value: int):
        self.words[addr // 4] = value & WORD_MASK

    def load_words(self, words: List[int], base_addr: int = 0) -> int:
        """Copy words in from base_addr, returns how many fit"""
        start = base_addr // 4
        count = max(0, min(len(words), self.depth - start))
        self.words[start:start + count] = [w & WORD_MASK for w in words[:count]]
        return count

    def load_data(self, addr: int, data: bytes, byteorder: str = 'little') -> int:
        """Copy raw bytes in at a byte address, returns how many fit"""
        count = max(0, min(len(data), self.size - addr))
        for i in range(count):
            a = addr + i
            lane = a % 4 if byteorder == 'little' else 3 - a % 4
            shift = lane * 8
            word = self.words[a // 4] & ~(0xFF << shift)
            self.words[a // 4] = (word | (data[i] << shift)) & WORD_MASK
        return count


class MachineState:
    """Memory, registers, pc and counters of one emulated processor"""
    def __init__(self, mem_words: int = MEM_WORDS, stack_pointer: int = STACK_POINTER,
                 entry: int = 0, hardwire_zero: bool = False):
        self.regs = RegisterFile(hardwire_zero)
        self.mem = Memory(mem_words)
        self.pc = entry & WORD_MASK
        self.cycle = 0
        self.instr_count = [0, 0, 0]   # R, I, J

        self.regs.write(REG_SP, stack_pointer)
        self.regs.write(REG_RA, SENTINEL)


class DecodedInstruction:
    """Instruction fields, built fresh every cycle"""

    __slots__ = ("type", "raw", "opcode", "rs", "rt", "rd", "shamt",
                 "funct", "imm", "address")

    def __init__(self, raw: int, itype: str = UNKNOWN_TYPE):
        self.type = itype
        self.raw = raw
        self.opcode = 0
        self.rs = 0
        self.rt = 0
        self.rd = 0
        self.shamt = 0
        self.funct = 0
        self.imm = 0
        self.address = 0

    @property
    def is_jr(self) -> bool:
        return self.type == R_TYPE and self.funct == FUNCT_JR

    @property
    def mnemonic(self) -> str:
        return disassemble(self)

    def __repr__(self):
        return f"DecodedInstruction({self.type}, 0x{self.raw:08X}, {self.mnemonic!r})"


class Diagnostic:
    """What one stage did in one cycle.

    ``message`` is a short key (see ``MESSAGES``), ``values`` hold the
    numbers behind it and ``effects`` the architectural state it changed:
    ``('reg', index, value)``, ``('mem', address, value)`` or ``('pc', value)``.
    """

    __slots__ = ("stage", "kind", "message", "values", "effects")

    def __init__(self, stage: str, kind: str, message: str,
                 effects: Optional[List[Tuple]] = None, **values):
        self.stage = stage
        self.kind = kind
        self.message = message
        self.values = values
        self.effects = effects or []

    def __repr__(self):
        return f"Diagnostic({self.stage}, {self.kind}, {self.message}, {self.values})"


class CycleRecord:
    """Everything that happened in one cycle"""
    def __init__(self, cycle: int, pc: int):
        self.cycle = cycle
        self.pc = pc
        self.raw = 0
        self.instr: Optional[DecodedInstruction] = None
        self.diagnostics: Dict[str, Diagnostic] = {}
        self.halt: Optional[str] = None

    def add(self, diag: Diagnostic):
        self.diagnostics[diag.stage] = diag

    @property
    def effects(self) -> List[Tuple]:
        effects = []
        for stage in STAGES:
            if stage in self.diagnostics:
                effects.extend(self.diagnostics[stage].effects)
        return effects

    @property
    def faults(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics.values() if d.kind == FAULT]


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def fetch(state: MachineState) -> Tuple[int, Diagnostic]:
    """Read the word at pc and advance pc by 4"""
    pc = state.pc
    if not state.mem.in_range(pc):
        return SENTINEL, Diagnostic(FETCH, FAULT, 'fetch-out-of-range', pc=pc)
    raw = state.mem.read_word(pc)
    state.pc = (pc + 4) & WORD_MASK
    return raw, Diagnostic(FETCH, INFO, 'fetch', pc=pc, raw=raw)


def decode(state: MachineState, raw: int) -> Tuple[DecodedInstruction, Diagnostic]:
    """Classify the word and extract its fields; only touches instr_count"""
    if raw == SENTINEL:
        instr = DecodedInstruction(raw)
        return instr, Diagnostic(DECODE, SKIP, 'decode-unknown', raw=raw)

    opcode = (raw >> 26) & 0x3F
    if opcode == OP_SPECIAL:
        instr = DecodedInstruction(raw, R_TYPE)
        instr.rs = (raw >> 21) & 0x1F
        instr.rt = (raw >> 16) & 0x1F
        instr.rd = (raw >> 11) & 0x1F
        instr.shamt = (raw >> 6) & 0x1F
        instr.funct = raw & 0x3F
    elif opcode in (OP_J, OP_JAL):
        instr = DecodedInstruction(raw, J_TYPE)
        instr.address = raw & 0x3FFFFFF
    else:
        instr = DecodedInstruction(raw, I_TYPE)
        instr.rs = (raw >> 21) & 0x1F
        instr.rt = (raw >> 16) & 0x1F
        instr.imm = raw & 0xFFFF
    instr.opcode = opcode
    state.instr_count[TYPE_INDEX[instr.type]] += 1

    regs = state.regs
    diag = Diagnostic(DECODE, INFO, 'decode-' + instr.type.lower(),
                      type=instr.type, mnemonic=instr.mnemonic, opcode=opcode,
                      rs=instr.rs, rs_val=regs.read(instr.rs),
                      rt=instr.rt, rt_val=regs.read(instr.rt),
                      rd=instr.rd, rd_val=regs.read(instr.rd),
                      shamt=instr.shamt, funct=instr.funct,
                      imm=instr.imm, address=instr.address)
    return instr, diag


def execute(state: MachineState, instr: DecodedInstruction) -> Tuple[int, Diagnostic]:
    """ALU and control transfer, returns (alu_result, diagnostic)"""
    alu_result = 0
    regs = state.regs

    if instr.type == R_TYPE:
        if instr.funct == FUNCT_ADD:
            alu_result = (regs.read(instr.rs) + regs.read(instr.rt)) & WORD_MASK
            return alu_result, Diagnostic(EXECUTE, INFO, 'alu', result=alu_result)
        if instr.funct == FUNCT_JR:
            state.pc = regs.read(instr.rs)
            return alu_result, Diagnostic(EXECUTE, INFO, 'jump-register',
                                          effects=[('pc', state.pc)], target=state.pc)
        return alu_result, Diagnostic(EXECUTE, SKIP, 'unimplemented-funct', funct=instr.funct)

    if instr.type == I_TYPE:
        # ADDI computes a sum, LW/SW the effective address
        if instr.opcode in (OP_ADDI, OP_LW, OP_SW):
            alu_result = (regs.read(instr.rs) + sign_extend(instr.imm, 16)) & WORD_MASK
            return alu_result, Diagnostic(EXECUTE, INFO, 'alu', result=alu_result)
        return alu_result, Diagnostic(EXECUTE, SKIP, 'unimplemented-opcode', opcode=instr.opcode)

    if instr.type == J_TYPE:
        target = (instr.address << 2) & WORD_MASK
        if instr.opcode == OP_JAL:
            link = state.pc   # already advanced past the jal
            regs.write(REG_RA, link)
            state.pc = target
            return alu_result, Diagnostic(EXECUTE, INFO, 'jump-link',
                                          effects=[('reg', REG_RA, link), ('pc', target)],
                                          target=target, link=link)
        if instr.opcode == OP_J:
            state.pc = target
            return alu_result, Diagnostic(EXECUTE, INFO, 'jump',
                                          effects=[('pc', target)], target=target)
        return alu_result, Diagnostic(EXECUTE, SKIP, 'unimplemented-opcode', opcode=instr.opcode)

    return alu_result, Diagnostic(EXECUTE, SKIP, 'skip')


def memory_access(state: MachineState, instr: DecodedInstruction,
                  alu_result: int) -> Tuple[int, Diagnostic]:
    """Load/store for LW and SW, everything else passes through"""
    if instr.type != I_TYPE or instr.opcode not in (OP_LW, OP_SW):
        return alu_result, Diagnostic(MEMORY, SKIP, 'pass')

    mem = state.mem
    address = alu_result
    if instr.opcode == OP_LW:
        if not mem.in_range(address):
            return alu_result, Diagnostic(MEMORY, FAULT, 'load-out-of-range', address=address)
        value = mem.read_word(address)
        return value, Diagnostic(MEMORY, INFO, 'load', address=address, value=value)

    if not mem.in_range(address):
        return alu_result, Diagnostic(MEMORY, FAULT, 'store-out-of-range', address=address)
    value = state.regs.read(instr.rt)
    mem.write_word(address, value)
    return alu_result, Diagnostic(MEMORY, INFO, 'store', effects=[('mem', address, value)],
                                  address=address, value=value)


def defines_result(instr: DecodedInstruction, mem_diag: Optional[Diagnostic] = None) -> bool:
    """True for operations that actually produce a register result"""
    if instr.type == R_TYPE:
        return instr.funct == FUNCT_ADD
    if instr.type == I_TYPE:
        if instr.opcode == OP_ADDI:
            return True
        if instr.opcode == OP_LW:
            return mem_diag is None or mem_diag.kind != FAULT
    return False


def write_back(state: MachineState, instr: DecodedInstruction, alu_result: int,
               strict: bool = False, mem_diag: Optional[Diagnostic] = None) -> Diagnostic:
    """Commit the result to rd (R-type) or rt (I-type).

    By default every R-type except JR and every I-type writes back, whether
    or not the operation is implemented. With ``strict`` only results of
    ``defines_result`` operations are committed.
    """
    if instr.type == UNKNOWN_TYPE:
        return Diagnostic(WRITE_BACK, SKIP, 'skip')

    if instr.type == R_TYPE and not instr.is_jr:
        dest = instr.rd
    elif instr.type == I_TYPE:
        dest = instr.rt
    else:
        return Diagnostic(WRITE_BACK, INFO, 'no-write', pc=state.pc)

    if strict and not defines_result(instr, mem_diag):
        return Diagnostic(WRITE_BACK, SKIP, 'write-discarded', reg=dest, pc=state.pc)
    if not state.regs.write(dest, alu_result):
        return Diagnostic(WRITE_BACK, SKIP, 'write-dropped', reg=dest, value=alu_result, pc=state.pc)
    return Diagnostic(WRITE_BACK, INFO, 'write', effects=[('reg', dest, alu_result & WORD_MASK)],
                      reg=dest, value=alu_result & WORD_MASK, pc=state.pc)


# ---------------------------------------------------------------------------
# Disassembly and rendering
# ---------------------------------------------------------------------------

def disassemble(instr: DecodedInstruction) -> str:
    """Disassemble instruction to assembly string"""
    rs, rt, rd = reg_name(instr.rs), reg_name(instr.rt), reg_name(instr.rd)

    if instr.type == R_TYPE:
        if instr.funct == FUNCT_ADD:
            return f"add {rd}, {rs}, {rt}"
        if instr.funct == FUNCT_JR:
            return f"jr {rs}"

    if instr.type == I_TYPE:
        if instr.opcode == OP_ADDI:
            return f"addi {rt}, {rs}, 0x{instr.imm:04X}"
        if instr.opcode == OP_LW:
            return f"lw {rt}, 0x{instr.imm:04X}({rs})"
        if instr.opcode == OP_SW:
            return f"sw {rt}, 0x{instr.imm:04X}({rs})"

    if instr.type == J_TYPE:
        op = 'jal' if instr.opcode == OP_JAL else 'j'
        return f"{op} 0x{instr.address << 2:08X}"

    return f"unknown(0x{instr.raw:08X})"


STAGE_LABELS = {
    FETCH: 'Instruction Fetch',
    DECODE: 'Instruction Decode',
    EXECUTE: 'Execute',
    MEMORY: 'Memory Access',
    WRITE_BACK: 'Write Back',
}

MESSAGES = {
    'fetch': "0x{raw:08x} (PC=0x{pc:08x})",
    'fetch-out-of-range': "PC out of memory range: 0x{pc:08x}",
    'decode-r': ("Type: R, Inst: {mnemonic}\n"
                 "    opcode: {opcode:02x}, rs: {rs:02x} ({rs_val:08x}), rt: {rt:02x} ({rt_val:08x}), "
                 "rd: {rd:02x} ({rd_val:08x}), shamt: {shamt:02x}, funct: {funct:02x}"),
    'decode-i': ("Type: I, Inst: {mnemonic}\n"
                 "    opcode: {opcode:02x}, rs: {rs:02x} ({rs_val:08x}), rt: {rt:02x} ({rt_val:08x}), "
                 "imm: {imm:04x}"),
    'decode-j': ("Type: J, Inst: {mnemonic}\n"
                 "    opcode: {opcode:02x}, address: {address:07x}"),
    'decode-unknown': "Type: Unknown, raw: 0x{raw:08x}",
    'alu': "ALU result: 0x{result:08x}",
    'jump': "Jump to 0x{target:08x}",
    'jump-link': "Jump and Link to 0x{target:08x}, return address 0x{link:08x}",
    'jump-register': "JR to 0x{target:08x}",
    'unimplemented-funct': "Unknown R-type funct: {funct:02x}",
    'unimplemented-opcode': "Unknown opcode: {opcode:02x}",
    'skip': "Skipped",
    'pass': "Pass",
    'load': "Load, Address: 0x{address:08x}, Value: 0x{value:08x}",
    'store': "Store, Address: 0x{address:08x}, Value: 0x{value:08x}",
    'load-out-of-range': "Load address out of memory range: 0x{address:08x}",
    'store-out-of-range': "Store address out of memory range: 0x{address:08x}",
    'write': "Target: {target}, Value: 0x{value:08x} / newPC: 0x{pc:08x}",
    'write-dropped': "Target: {target} is hardwired, 0x{value:08x} dropped / newPC: 0x{pc:08x}",
    'write-discarded': "Target: {target}, no result to commit / newPC: 0x{pc:08x}",
    'no-write': "newPC: 0x{pc:08x}",
}

HALT_MESSAGES = {
    HALT_ZERO_WORD: "Reached a zero instruction word at PC=0x{pc:08x}, stopping.",
    HALT_SENTINEL_PC: "Returned to the caller sentinel (PC=0x{pc:08x}), stopping.",
    HALT_PC_RANGE: "PC out of memory range: 0x{pc:08x}",
    HALT_RETURN: "JR to the caller sentinel, stopping.",
    HALT_CYCLE_LIMIT: "Cycle limit reached at PC=0x{pc:08x}, stopping.",
}


def render_diagnostic(diag: Diagnostic) -> str:
    values = dict(diag.values)
    if 'reg' in values:
        values['target'] = reg_name(values['reg'])
    return MESSAGES[diag.message].format(**values)


def render_cycle(record: CycleRecord) -> str:
    """Human readable block for one cycle"""
    lines = [f"{record.raw:08x}> Cycle: {record.cycle}"]
    for stage in STAGES:
        if stage in record.diagnostics:
            lines.append(f"[{STAGE_LABELS[stage]}] {render_diagnostic(record.diagnostics[stage])}")
    return "\n".join(lines)


def format_effect(effect: Tuple) -> str:
    if effect[0] == 'reg':
        return f"{reg_name(effect[1])}=0x{effect[2]:08X}"
    if effect[0] == 'mem':
        return f"mem[0x{effect[1]:08X}]=0x{effect[2]:08X}"
    return f"pc=0x{effect[1]:08X}"


def format_trace_line(record: CycleRecord) -> str:
    disasm = disassemble(record.instr) if record.instr else f"unknown(0x{record.raw:08X})"
    resources_str = ";".join(format_effect(e) for e in record.effects)
    return f"0x{record.pc:08X};0x{record.raw:08X};{disasm};{resources_str}"


# ---------------------------------------------------------------------------
# Emulator
# ---------------------------------------------------------------------------

class MIPS_ISS:
    """MIPS five-stage instruction set emulator"""

    def __init__(self, mem_words: int = MEM_WORDS, stack_pointer: int = STACK_POINTER,
                 entry: int = 0, max_cycles: Optional[int] = None,
                 hardwire_zero: bool = False, strict_writeback: bool = False):
        self.state = MachineState(mem_words, stack_pointer, entry, hardwire_zero)
        self.max_cycles = max_cycles
        self.strict_writeback = strict_writeback
        self.halt_reason: Optional[str] = None
        self.halt_pc: Optional[int] = None

    # Convenience accessors
    @property
    def regs(self) -> RegisterFile:
        return self.state.regs

    @property
    def mem(self) -> Memory:
        return self.state.mem

    @property
    def pc(self) -> int:
        return self.state.pc

    @pc.setter
    def pc(self, value: int):
        self.state.pc = value & WORD_MASK

    def load_binary(self, bin_file: str, byteorder: str = 'native') -> int:
        """Load a flat binary image from address 0, returns words loaded"""
        with open(bin_file, 'rb') as f:
            data = f.read()
        usable = len(data) - len(data) % 4
        if usable != len(data):
            print(f"Warning: ignoring {len(data) - usable} trailing bytes of {bin_file}", file=sys.stderr)
        words = [w for (w,) in struct.iter_unpack(BYTE_ORDERS[byteorder], data[:usable])]
        loaded = self.mem.load_words(words)
        if loaded < len(words):
            print(f"Warning: {bin_file} truncated to {loaded} words", file=sys.stderr)
        return loaded

    def load_hex_file(self, hex_file: str, base_addr: int = 0) -> int:
        """Load hex file into memory starting at base address.

        Hex file format: one 32-bit word per line (8 hex digits, optional
        0x prefix). Blank lines and '#' comments are skipped.
        """
        words = []
        with open(hex_file, 'r') as f:
            for lineno, line in enumerate(f, 1):
                line = line.split('#', 1)[0].strip()
                if not line:
                    continue
                try:
                    word = int(line, 16)
                except ValueError:
                    raise ValueError(f"{hex_file}:{lineno}: invalid hex word {line!r}") from None
                if not 0 <= word <= WORD_MASK:
                    raise ValueError(f"{hex_file}:{lineno}: {line!r} does not fit in 32 bits")
                words.append(word)
        loaded = self.mem.load_words(words, base_addr)
        if loaded < len(words):
            print(f"Warning: {hex_file} truncated to {loaded} words", file=sys.stderr)
        return loaded

    def load_elf(self, elf_file: str) -> int:
        """Load the ELF sections into memory, returns the entry point"""
        with open(elf_file, 'rb') as f:
            try:
                return self._load_elf_sections(ELFFile(f))
            except ELFError as e:
                raise ValueError(f"{elf_file}: {e}") from None

    def _load_elf_sections(self, elf: ELFFile) -> int:
        byteorder = 'little' if elf.little_endian else 'big'

        text_section = elf.get_section_by_name('.text')
        if text_section is None:
            raise ValueError("No .text section found in ELF file")

        for section in elf.iter_sections():
            if section.name not in ['.text', '.data', '.rodata', '.sdata', '.bss']:
                continue
            addr = section['sh_addr']
            # .bss has no file contents, it is cleared in memory
            if section['sh_type'] == 'SHT_NOBITS':
                data = bytes(section['sh_size'])
            else:
                data = section.data()
            if not data:
                continue
            loaded = self.mem.load_data(addr, data, byteorder)
            if loaded < len(data):
                print(f"Warning: Section {section.name} at 0x{addr:08x} truncated to {loaded} bytes",
                      file=sys.stderr)

        # Entry point: _start if the symbol table has it
        symtab = elf.get_section_by_name('.symtab')
        if symtab is not None:
            for symbol in symtab.iter_symbols():
                if symbol.name == '_start':
                    return symbol['st_value']
        return elf.header['e_entry']

    def load_image(self, image: str, fmt: str = 'auto', byteorder: str = 'native') -> int:
        """Load a program image in any supported format, returns the entry pc"""
        if fmt == 'auto':
            with open(image, 'rb') as f:
                magic = f.read(4)
            if magic == b'\x7fELF':
                fmt = 'elf'
            elif image.endswith(('.hex', '.mem')):
                fmt = 'hex'
            else:
                fmt = 'bin'

        if fmt == 'elf':
            return self.load_elf(image)
        if fmt == 'hex':
            self.load_hex_file(image)
        elif fmt == 'bin':
            self.load_binary(image, byteorder)
        else:
            raise ValueError(f"Unknown image format: {fmt}")
        return 0

    def step(self) -> CycleRecord:
        """Run one instruction through all five stages"""
        state = self.state
        state.cycle += 1
        record = CycleRecord(state.cycle, state.pc)

        raw, diag = fetch(state)
        record.raw = raw
        record.add(diag)

        # A zero word marks the end of the program
        if raw == 0:
            record.halt = HALT_ZERO_WORD
            return record

        instr, diag = decode(state, raw)
        record.instr = instr
        record.add(diag)

        alu_result, diag = execute(state, instr)
        record.add(diag)

        alu_result, mem_diag = memory_access(state, instr, alu_result)
        record.add(mem_diag)

        record.add(write_back(state, instr, alu_result, self.strict_writeback, mem_diag))

        record.halt = self.check_halt(instr)
        return record

    def check_halt(self, instr: DecodedInstruction) -> Optional[str]:
        state = self.state
        if state.pc == SENTINEL:
            return HALT_SENTINEL_PC
        if not state.mem.in_range(state.pc):
            return HALT_PC_RANGE
        # jr already moved pc to the register value, so the sentinel-pc check above fires first
        if instr.is_jr and state.regs.read(instr.rs) == SENTINEL:
            return HALT_RETURN
        if self.max_cycles is not None and state.cycle >= self.max_cycles:
            return HALT_CYCLE_LIMIT
        return None

    def run(self, trace_file: Optional[str] = None,
            on_cycle: Optional[Callable[[CycleRecord], None]] = None) -> str:
        """Execute until a halt condition, returns the halt reason"""
        state = self.state
        trace_lines = []

        while state.pc != SENTINEL:
            record = self.step()
            if on_cycle is not None:
                on_cycle(record)
            if record.halt != HALT_ZERO_WORD:
                trace_lines.append(format_trace_line(record))
            if record.halt is not None:
                self.halt_reason = record.halt
                self.halt_pc = record.pc if record.halt == HALT_ZERO_WORD else state.pc
                break
        else:
            self.halt_reason = HALT_SENTINEL_PC
            self.halt_pc = state.pc

        if trace_file:
            trace_lines.append(self.format_summary_line())
            with open(trace_file, 'w') as f:
                f.write('\n'.join(trace_lines))
        return self.halt_reason

    def summary(self) -> Dict[str, object]:
        state = self.state
        return {
            'pc': state.pc,
            'cycles': state.cycle,
            'r_type': state.instr_count[0],
            'i_type': state.instr_count[1],
            'j_type': state.instr_count[2],
            'v0': state.regs.read(REG_V0),
            'halt': self.halt_reason,
        }

    def format_summary_line(self) -> str:
        s = self.summary()
        return (f"final;pc=0x{s['pc']:08X};cycles={s['cycles']};r={s['r_type']};"
                f"i={s['i_type']};j={s['j_type']};v0=0x{s['v0']:08X};halt={s['halt']}")

    def render_summary(self) -> str:
        s = self.summary()
        lines = []
        if self.halt_reason is not None:
            lines.append(HALT_MESSAGES[self.halt_reason].format(pc=self.halt_pc))
        lines.append(f"{s['pc']:08x}> Final Result")
        lines.append(f"Cycles: {s['cycles']}, R-type instructions: {s['r_type']}, "
                     f"I-type instructions: {s['i_type']}, J-type instructions: {s['j_type']}")
        lines.append(f"Return value (v0): 0x{s['v0']:x}")
        return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='MIPS Instruction Set Emulator (five-stage, 32-bit subset)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s program.bin
  %(prog)s program.hex -q -o trace.log
  %(prog)s program.elf --max-cycles 100000
        '''
    )

    parser.add_argument(
        'image',
        metavar='IMAGE',
        help='Program image to execute (flat binary, hex or ELF)'
    )

    parser.add_argument(
        '-f', '--format',
        default='auto',
        choices=IMAGE_FORMATS,
        help='Image format (default: detect from ELF magic / file suffix)'
    )

    parser.add_argument(
        '--endian',
        default='native',
        choices=list(BYTE_ORDERS),
        help='Word byte order of flat binary images (default: native)'
    )

    parser.add_argument(
        '-o', '--output',
        default=None,
        metavar='OUTPUT_FILE',
        help='Write a machine readable execution trace to OUTPUT_FILE'
    )

    parser.add_argument(
        '-e', '--entry',
        default=None,
        type=lambda x: int(x, 16),
        metavar='ENTRY',
        help='Initial PC (hex), overrides the image entry point'
    )

    parser.add_argument(
        '--stack-pointer',
        default=STACK_POINTER,
        type=lambda x: int(x, 16),
        metavar='SP',
        help=f'Initial $sp (hex, default: 0x{STACK_POINTER:X})'
    )

    parser.add_argument(
        '--max-cycles',
        default=None,
        type=int,
        metavar='N',
        help='Stop after N cycles (default: no limit)'
    )

    parser.add_argument(
        '--hardwire-zero',
        action='store_true',
        help='Drop writes to $zero'
    )

    parser.add_argument(
        '--strict-writeback',
        action='store_true',
        help='Only write back results of implemented operations'
    )

    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Do not print the per-cycle trace'
    )

    args = parser.parse_args(argv)
    if args.max_cycles is not None and args.max_cycles < 1:
        parser.error("--max-cycles must be at least 1")

    iss = MIPS_ISS(stack_pointer=args.stack_pointer, max_cycles=args.max_cycles,
                   hardwire_zero=args.hardwire_zero, strict_writeback=args.strict_writeback)
    try:
        entry = iss.load_image(args.image, args.format, args.endian)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load {args.image}: {e}", file=sys.stderr)
        sys.exit(1)
    iss.pc = args.entry if args.entry is not None else entry

    def report(record: CycleRecord):
        for fault in record.faults:
            print(f"Error: {render_diagnostic(fault)}", file=sys.stderr)
        if not args.quiet and record.halt != HALT_ZERO_WORD:
            print(render_cycle(record))

    try:
        iss.run(args.output, on_cycle=report)
    except OSError as e:
        print(f"Error: cannot write trace: {e}", file=sys.stderr)
        sys.exit(1)
    print(iss.render_summary())
    return 0


if __name__ == '__main__':
    sys.exit(main())
