# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import logging
import os
import random
import threading
import time
from collections import Counter, namedtuple
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
FONT_START_ADDRESS = 0x50
FONT_GLYPH_SIZE = 5
STACK_SIZE = 32
REGISTER_COUNT = 16
KEY_COUNT = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SPRITE_WIDTH = 8
TIMER_PERIOD_NS = 1_000_000_000 // 60   # both timers count down at 60Hz
DEFAULT_CLOCK_HZ = 700
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False

# WATCH OUT: masks order is important!!!
# the lookup stops at the first mask whose masked opcode is listed
OPCODE_MASKS = (
    (0xFFFF, (0x00E0, 0x00EE)),
    (0xF0FF, (0xE09E, 0xE0A1, 0xF007, 0xF00A, 0xF015, 0xF018, 0xF01E, 0xF029, 0xF033, 0xF055, 0xF065)),
    (0xF00F, (0x5000, 0x8000, 0x8001, 0x8002, 0x8003, 0x8004, 0x8005, 0x8006, 0x8007, 0x800E, 0x9000)),
    (0xF000, (0x1000, 0x2000, 0x3000, 0x4000, 0x6000, 0x7000, 0xA000, 0xB000, 0xC000, 0xD000)),
)

logger = logging.getLogger("chip8")


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the interpreter"""


class VMFault(Chip8Error):
    """fatal fault: the machine halts and never retries the instruction"""


class StackOverflow(VMFault):
    pass


class StackUnderflow(VMFault):
    pass


class MemoryOutOfBounds(VMFault):
    def __init__(self, address):
        self.address = address
        super().__init__(f"address 0x{address:04x} is outside the {MEMORY_SIZE} bytes address space")


class RomLoadError(Chip8Error):
    """the ROM could not be read or does not fit in memory, raised before the loop starts"""


class MachineHalted(Chip8Error):
    """step() was called on a machine that already faulted"""


# ******************** UTILITIES SECTION
Opcode = namedtuple("Opcode", ["word", "op", "x", "y", "n", "nn", "nnn"])


def decode_fields(word):
    """split a 16 bit instruction word into its nibbles and immediates, it never fails"""
    return Opcode(
        word=word,
        op=(word & 0xF000) >> 12,
        x=(word & 0x0F00) >> 8,
        y=(word & 0x00F0) >> 4,
        n=word & 0x000F,
        nn=word & 0x00FF,
        nnn=word & 0x0FFF,
    )


def asm(msg):
    """decorator to log the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 0x2     # args[0] equals self of the decorated method, pc already advanced
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated function in the message
            if logger.isEnabledFor(logging.DEBUG):
                vals['mem_addr'] = mem_addr
                logger.debug(msg.format(**vals))
        return wrapper_fn
    return decorator


class Quirks:
    """
    runtime selectable compatibility behaviours, so that every ROM can pick the ones it was written for
    - shift_uses_vy: 8XY6/8XYE shift VY into VX (original COSMAC VIP), otherwise VX is shifted in place
    - increment_index: FX55/FX65 leave I advanced by X+1 (original COSMAC VIP)
    """
    def __init__(self, shift_uses_vy=True, increment_index=False):
        self.shift_uses_vy = shift_uses_vy
        self.increment_index = increment_index

    def __repr__(self):
        return f"Quirks(shift_uses_vy={self.shift_uses_vy}, increment_index={self.increment_index})"


class Pacer:
    """throttles the instruction loop to a fixed rate by sleeping what is left of each period"""
    def __init__(self, hz=DEFAULT_CLOCK_HZ, clock=time.perf_counter, sleep=time.sleep):
        if hz <= 0:
            raise ValueError(f"The instruction rate must be positive, got {hz}")
        self.hz = hz
        self.period = 1 / hz
        self._clock = clock
        self._sleep = sleep

    def start(self):
        return self._clock()

    def throttle(self, started):
        """sleep the remainder of the period begun at `started`, return the time slept"""
        remaining = self.period - (self._clock() - started)
        if remaining <= 0:
            return 0
        self._sleep(remaining)
        return remaining


class Timers:
    """
    delay (dt) and sound (st) timers
    they are decremented once for every full 1/60 of second of wall clock time, no matter how many
    instructions were executed in the meantime
    time is kept in integer nanoseconds, ticks are counted from the start so no period is ever lost
    """
    def __init__(self, clock=time.perf_counter_ns, period_ns=TIMER_PERIOD_NS):
        self.dt = 0
        self.st = 0
        self.period_ns = period_ns
        self.period = period_ns / 1_000_000_000   # seconds, for waits
        self._clock = clock
        self._start = clock()
        self._ticks = 0     # ticks applied since _start

    def update(self, now=None):
        """sample the clock and apply every elapsed tick, return the number of ticks"""
        now = self._clock() if now is None else now
        ticks = int((now - self._start) // self.period_ns) - self._ticks
        if ticks <= 0:
            return 0
        self._ticks += ticks
        self.dt = max(0, self.dt - ticks)
        self.st = max(0, self.st - ticks)
        return ticks


# ******************** I/O SECTION
class Display:
    """
    64x32 monochrome surface shared between the instruction loop and the presentation loop
    every access holds the lock for a single clear/draw or a single copy, never longer
    """
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w
        self.version = 0    # bumped on every change, the presenter redraws only when it moves
        self._lock = threading.Lock()

    def clear(self):
        with self._lock:
            self.buffer = [False] * self.h * self.w
            self.version += 1

    def draw_sprite(self, x, y, rows):
        """
        XOR the sprite rows onto the surface starting at (x, y) and return True on collision,
        that is when at least one pixel went from ON to OFF
        the sprite itself is neither clipped nor wrapped: a row running past the right edge
        continues on the following line, pixels falling past the last line are dropped
        """
        collision = False
        with self._lock:
            for i, sprite_byte in enumerate(rows):
                for j in range(SPRITE_WIDTH):
                    if not sprite_byte & (0x80 >> j):
                        continue
                    index = (y + i) * self.w + x + j
                    if index >= len(self.buffer):
                        continue
                    if self.buffer[index]:
                        collision = True
                    self.buffer[index] = not self.buffer[index]
            self.version += 1
        return collision

    def snapshot(self):
        """copy of the surface for the presenter, as (version, flat row-major buffer)"""
        with self._lock:
            return self.version, list(self.buffer)

    def current_grid(self):
        """the surface as grid[x][y]"""
        _, buffer = self.snapshot()
        return [[buffer[y * self.w + x] for y in range(self.h)] for x in range(self.w)]


class Keypad:
    """
    state of the 16 keys hexadecimal keypad
    the host feeds press/release events, the instruction loop only queries it
    """
    def __init__(self):
        self._held = [False] * KEY_COUNT
        self._presses = 0       # number of key-down edges seen so far
        self._last_pressed = None
        self._closed = False
        self._cond = threading.Condition()

    def __str__(self):
        return f"Keypad(held={[hex(k) for k in self.held_keys()]})"

    @property
    def presses(self):
        with self._cond:
            return self._presses

    @property
    def closed(self):
        with self._cond:
            return self._closed

    def press(self, key):
        with self._cond:
            if self._held[key]:
                return      # auto-repeat is not an edge
            self._held[key] = True
            self._presses += 1
            self._last_pressed = key
            self._cond.notify_all()

    def release(self, key):
        with self._cond:
            self._held[key] = False

    def is_held(self, key):
        if not 0 <= key < KEY_COUNT:
            return False
        with self._cond:
            return self._held[key]

    def held_keys(self):
        with self._cond:
            return tuple(k for k in range(KEY_COUNT) if self._held[k])

    def wait_for_key(self, timeout=None, since=None):
        """
        park the caller until a key-down edge newer than `since` (default: now) happens
        return the key, or None when the timeout expires or the keypad gets closed
        """
        with self._cond:
            seen = self._presses if since is None else since
            self._cond.wait_for(lambda: self._closed or self._presses != seen, timeout)
            if self._presses == seen:
                return None
            return self._last_pressed

    def close(self):
        """release every waiter, used when the host shuts down"""
        with self._cond:
            self._closed = True
            self._cond.notify_all()


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 32 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_SIZE):
        self.addr_list = [0] * capacity
        self.sp = -1    # -1 means empty

    def __len__(self):
        return self.sp + 1

    def __str__(self):
        return str([hex(a) for a in self.addr_list[:self.sp + 1]])

    def append(self, address):
        if self.sp + 1 >= len(self.addr_list):
            raise StackOverflow(f"The CHIP-8 stack can contain at most {len(self.addr_list)} addresses. Limit exceeded")
        self.sp += 1
        self.addr_list[self.sp] = address

    def pop(self):
        if self.sp < 0:
            raise StackUnderflow("Tried to return from a subroutine with an empty CHIP-8 stack")
        address = self.addr_list[self.sp]
        self.sp -= 1
        return address


# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self, font_base=FONT_START_ADDRESS):
        if not 0 <= font_base <= MEMORY_SIZE - len(C8_FONTS):
            raise ValueError(f"The font table does not fit in memory at 0x{font_base:04x}")
        self.font_base = font_base
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[font_base:font_base + len(C8_FONTS)] = bytes(C8_FONTS)

    @staticmethod
    def _check(address):
        if not 0 <= address < MEMORY_SIZE:
            raise MemoryOutOfBounds(address)

    def _check_slice(self, key):
        if key.start is None or key.stop is None or key.step not in (None, 1):
            raise TypeError("Memory slices need explicit start and stop")
        if key.stop > key.start:
            self._check(key.start)
            self._check(key.stop - 1)

    def __setitem__(self, key, value):
        if isinstance(key, slice):
            self._check_slice(key)
            data = bytes(v & 0xFF for v in value)
            if len(data) != max(0, key.stop - key.start):
                raise ValueError("Memory slices can't be resized")
            self.inner[key] = data
        else:
            self._check(key)
            self.inner[key] = value & 0xFF

    def __getitem__(self, index):
        if isinstance(index, slice):
            self._check_slice(index)
        else:
            self._check(index)
        return self.inner[index]

    def __len__(self):
        return len(self.inner)

    def load_rom(self, rom):
        """copy the ROM bytes at the program start address, raise RomLoadError if they don't fit"""
        if not rom:
            raise RomLoadError("The ROM is empty")
        if len(rom) > MAX_ROM_SIZE:
            raise RomLoadError(f"The ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS + len(rom)] = rom
        logger.info("Loaded a %d bytes ROM at 0x%04x", len(rom), ROM_START_ADDRESS)


# ******************** CPU SECTION
class Chip8:
    def __init__(self, s=None, k=None, quirks=None, font_base=FONT_START_ADDRESS, rng=None, clock=time.perf_counter_ns):
        self.mem = Memory(font_base)
        self.stack = Stack()
        self.v_regs = [0] * REGISTER_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.timers = Timers(clock)
        self.screen = s if s is not None else Display()
        self.keypad = k if k is not None else Keypad()
        self.quirks = quirks if quirks is not None else Quirks()
        self.rng = rng if rng is not None else random.Random()
        self.cycles = 0
        self.unknown_opcodes = Counter()    # opcode word -> times it was met
        self.halted = False
        self.fault = None
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
            0x8000: self._set_vx_to_vy,
            0x8001: self._set_vx_or_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x8006: self._shr,
            0x8007: self._subn_vx_vy,
            0x800E: self._shl,
            0x9000: self._skip_if_not_eq_regs,
            0xA000: self._set_idx,
            0xB000: self._jump_nnn,
            0xC000: self._random_byte_and,
            0xD000: self._to_screen,
            0xE09E: self._skip_if_pressed,
            0xE0A1: self._skip_if_not_pressed,
            0xF007: self._set_vx_dt,
            0xF00A: self._wait_keypress,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        counters = f"CYCLES:{self.cycles} | UNKNOWN_OPCODES:{sum(self.unknown_opcodes.values())}"
        return f"{registers}\n{stack}\n{timers}\n{counters}"

    @property
    def dt(self):
        return self.timers.dt

    @dt.setter
    def dt(self, value):
        self.timers.dt = value

    @property
    def st(self):
        return self.timers.st

    @st.setter
    def st(self, value):
        self.timers.st = value

    def beep_requested(self):
        return self.timers.st > 0

    def current_grid(self):
        return self.screen.current_grid()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x:X}")
    def _skip_if_pressed(self, op):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = op.x
        if self.keypad.is_held(self.v_regs[x]):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x:X}")
    def _skip_if_not_pressed(self, op):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = op.x
        if not self.keypad.is_held(self.v_regs[x]):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, K")
    def _wait_keypress(self, op):
        """
        wait for a key press and store its value in Vx
        the loop parks on the keypad and only wakes up once per timer period to keep the timers running
        """
        x = op.x
        since = self.keypad.presses
        key = None
        while key is None and not self.keypad.closed:
            key = self.keypad.wait_for_key(timeout=self.timers.period, since=since)
            self.timers.update()
        if key is None:
            self.pc -= 0x2      # keypad closed, stay on the same instruction
        else:
            self.v_regs[x] = key
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, DT")
    def _set_vx_dt(self, op):
        """set Vx = DT (delay timer) value"""
        x = op.x
        self.v_regs[x] = self.dt
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x:X}")
    def _set_dt_vx(self, op):
        """set DT (delay timer) = Vx"""
        x = op.x
        self.dt = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, op):
        self.screen.clear()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, op):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, op):
        address = op.nnn
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, op):
        address = op.nnn
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, {comparison_value}")
    def _skip_if_eq(self, op):
        x, comparison_value = op.x, op.nn
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, {comparison_value}")
    def _skip_if_not_eq(self, op):
        x, comparison_value = op.x, op.nn
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, op):
        x, y = op.x, op.y
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, op):
        x, y = op.x, op.y
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, {value}")
    def _set_vk(self, op):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = op.x, op.nn
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, {value}")
    def _add_to_vk(self, op):
        """add to the value already present in one of the variable registers, VF is untouched"""
        x, value = op.x, op.nn
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, op):
        """set the value of Vx equal to that of Vy"""
        x, y = op.x, op.y
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, op):
        """set the value of Vx to Vx OR Vy"""
        x, y = op.x, op.y
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, op):
        """set the value of Vx to Vx AND Vy"""
        x, y = op.x, op.y
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, op):
        """set the value of Vx to Vx XOR Vy"""
        x, y = op.x, op.y
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    # the arithmetic and shift instructions below write Vx first and VF last,
    # so when x is 0xF the flag is what remains in the register

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, op):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = op.x, op.y
        sum = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = sum & 0xFF     # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[0xF] = 1 if sum > 0xFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, op):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        x, y = op.x, op.y
        not_borrow = 1 if self.v_regs[x] >= self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x:X}, V{src:X}")
    def _shr(self, op):
        """set Vx equal to Vy SHR 1 (Vx SHR 1 without the shift quirk), VF = bit 0 of Vx before the shift"""
        x = op.x
        src = op.y if self.quirks.shift_uses_vy else op.x
        old_vx, value = self.v_regs[x], self.v_regs[src]
        self.v_regs[x] = value >> 1
        self.v_regs[0xF] = old_vx & 0x1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, op):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        x, y = op.x, op.y
        not_borrow = 1 if self.v_regs[y] >= self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x:X}, V{src:X}")
    def _shl(self, op):
        """set Vx equal to Vy SHL 1 (Vx SHL 1 without the shift quirk), VF = shifted out bit"""
        x = op.x
        src = op.y if self.quirks.shift_uses_vy else op.x
        value = self.v_regs[src]
        self.v_regs[x] = (value << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = (value & 0x80) >> 7
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:04x}")
    def _set_idx(self, op):
        """set the value of the I register"""
        value = op.nnn
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump_nnn(self, op):
        """BNNN behaves as a plain jump, V0 is not added"""
        address = op.nnn
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, op):
        x, kk = op.x, op.nn
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{register:X}")
    def _set_st(self, op):
        """set ST = Vx"""
        register = op.x
        self.st = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{register:X}")
    def _add_to_idx(self, op):
        """set I = I + Vx, on overflow past 0xFFF wrap around and set VF"""
        register = op.x
        total = self.idx + self.v_regs[register]
        if total > 0xFFF:
            self.idx = total % MEMORY_SIZE
            self.v_regs[0xF] = 1
        else:
            self.idx = total
            self.v_regs[0xF] = 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{register:X}")
    def _select_char(self, op):
        """set I to location of sprite for digit Vx"""
        register = op.x
        self.idx = self.mem.font_base + (self.v_regs[register] & 0x0F) * FONT_GLYPH_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x:X}")
    def _store_vregs(self, op):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = op.x
        self.mem[self.idx:self.idx + x + 1] = self.v_regs[:x + 1]
        if self.quirks.increment_index:
            self.idx += x + 1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, [I]")
    def _load_vregs(self, op):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = op.x
        self.v_regs[:x + 1] = list(self.mem[self.idx:self.idx + x + 1])
        if self.quirks.increment_index:
            self.idx += x + 1
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x:X}")
    def _bcd_repr(self, op):
        """takes the decimal value of Vx and puts the hundreds digit in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = op.x
        value = self.v_regs[x]
        hundreds, tens, ones = (value // 100) % 10, (value // 10) % 10, value % 10
        self.mem[self.idx:self.idx + 3] = (hundreds, tens, ones)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n_bytes}")
    def _to_screen(self, op):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y, n_bytes = op.x, op.y, op.n
        # only the origin wraps around, the sprite itself is drawn as is
        x_coordinate = self.v_regs[x] % self.screen.w
        y_coordinate = self.v_regs[y] % self.screen.h
        rows = self.mem[self.idx:self.idx + n_bytes]
        collision = self.screen.draw_sprite(x_coordinate, y_coordinate, rows)
        self.v_regs[0xF] = 1 if collision else 0
        return locals()

    def _fallthrough(self, op):
        """unknown opcodes are counted and skipped, pc already points to the next instruction"""
        self.unknown_opcodes[op.word] += 1
        logger.warning("Unknown opcode 0x%04x at 0x%04x, skipped", op.word, self.pc - 0x2)

    def _goto_next_instruction(self):
        self.pc += 0x2

    def decode(self, opcode):
        """decode opcodes using masks and return respective function, None when nothing matches"""
        for mask, ops in OPCODE_MASKS:
            if (opcode & mask) in ops:
                return self.instructions[opcode & mask]
        return None

    def fetch(self):
        """read the big-endian instruction word at pc"""
        if not 0 <= self.pc < MEMORY_SIZE - 1:
            raise MemoryOutOfBounds(self.pc if self.pc >= MEMORY_SIZE else self.pc + 1)
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def step(self):
        """emulate one machine cycle: fetch, advance pc, decode, execute"""
        if self.halted:
            raise MachineHalted(f"The machine halted after a fault: {self.fault}")
        try:
            # fetch (each instruction is two bytes long)
            opcode = self.fetch()
            self._goto_next_instruction()
            # decode + execute
            instruction = self.decode(opcode)
            op = decode_fields(opcode)
            if instruction is None:
                self._fallthrough(op)
            else:
                instruction(op)
            self.cycles += 1
        except VMFault as fault:
            self.halted = True
            self.fault = fault
            logger.error("%s: %s\n%s", type(fault).__name__, fault, self)
            raise

    def run(self, stop=None, pacer=None):
        """
        instruction loop: one step, a timers sample, then sleep what is left of the pacing period
        it returns when `stop` is set and propagates any VMFault
        """
        stop = stop if stop is not None else threading.Event()
        pacer = pacer if pacer is not None else Pacer()
        while not stop.is_set():
            started = pacer.start()
            self.step()
            self.timers.update()
            pacer.throttle(started)
