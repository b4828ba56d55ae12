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
import random
from functools import wraps


logger = logging.getLogger(__name__)


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
FONT_START_ADDRESS = 0x50
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
KEYS_COUNT = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SCREEN_RESOLUTION = (SCREEN_WIDTH, SCREEN_HEIGHT)
WHITE = bytes((0xFF, 0xFF, 0xFF, 0xFF))
BLACK = bytes((0x00, 0x00, 0x00, 0xFF))
PIXEL_SIZE = len(WHITE)     # one RGBA record per framebuffer cell
FRAME_SIZE = SCREEN_WIDTH * SCREEN_HEIGHT * PIXEL_SIZE


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every fault raised by the interpreter"""

class LoadError(Chip8Error):
    pass

class StackUnderflow(Chip8Error):
    pass

class UnimplementedOpcode(Chip8Error):
    def __init__(self, opcode, address):
        super().__init__(f"Unimplemented opcode 0x{opcode:04x} at 0x{address:03x}")
        self.opcode = opcode
        self.address = address


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = (args[0].pc - 2) % MEMORY_SIZE   # args[0] equals self, pc is already past the instruction
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the log line
            vals['mem_addr'] = mem_addr
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(msg.format(**vals))
        return wrapper_fn
    return decorator


# ******************** I/O SECTION
class Keypad:
    """state of the 16 hexadecimal keys, True while a key is held down"""
    def __init__(self):
        self.states = [False] * KEYS_COUNT

    def __getitem__(self, key):
        return self.states[self._check(key)]

    def __setitem__(self, key, pressed):
        self.states[self._check(key)] = bool(pressed)

    @staticmethod
    def _check(key):
        if not 0 <= key < KEYS_COUNT:
            raise IndexError(f"Key 0x{key:x} is outside the keypad range 0x0-0xF")
        return key

    def untouched(self):
        return not any(self.states)

    def first(self):
        """get the lowest-indexed key currently held down"""
        return self.states.index(True)


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT THE RETURN ADDRESSES STACK
class Stack:
    def __init__(self):
        self.addr_list = []

    def __len__(self):
        return len(self.addr_list)

    def __getitem__(self, index):
        return self.addr_list[index]

    def __repr__(self):
        return "[" + ", ".join(f"0x{a:03x}" for a in self.addr_list) + "]"

    def append(self, address):
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise StackUnderflow("Return from subroutine with an empty stack")
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __setitem__(self, key, value):
        self.inner[key] = value

    def __getitem__(self, index):
        return self.inner[index]

    def __len__(self):
        return len(self.inner)

    def load_rom(self, rom):
        """copy the ROM bytes at the program start address, raise LoadError if they do not fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise LoadError(f"ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom
        logger.info(f"Loaded {len(rom)} bytes at 0x{ROM_START_ADDRESS:03x}")

    def read_word(self, address):
        """big-endian 16 bits word stored at address, wrapping at the end of memory"""
        return self.inner[address % MEMORY_SIZE] << 8 | self.inner[(address + 1) % MEMORY_SIZE]


# ******************** CPU SECTION
class Machine:
    def __init__(self, rng=None, strict=False):
        self.mem = Memory()
        self.stack = Stack()
        self.keypad = Keypad()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # I register, points at sprites and at the load/store area
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, a bare counter
        self.vmem = [0] * SCREEN_WIDTH * SCREEN_HEIGHT
        self.rng = rng or random.Random()
        self.strict = strict
        self.unimplemented = 0
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
            0xB000: self._jump_plus,
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
        registers = f"PC_REGISTER:0x{self.pc:03x} | IDX_REGISTER:0x{self.idx:03x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        return f"{registers}\n{stack}\n{timers}"

    # ********** PUBLIC INTERFACE
    def load(self, program):
        """copy a program image in memory starting at 0x200"""
        self.mem.load_rom(program)

    def read_word(self, address):
        return self.mem.read_word(address)

    def set_key(self, key, pressed):
        self.keypad[key] = pressed

    def tick_timer(self):
        """decrement delay and sound timers, expected to be called at 60Hz"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def render(self, buffer):
        """write one RGBA record per framebuffer cell into buffer, row-major"""
        if len(buffer) < FRAME_SIZE:
            raise ValueError(f"Render buffer holds {len(buffer)} bytes, {FRAME_SIZE} are needed")
        for i, pixel in enumerate(self.vmem):
            offset = i * PIXEL_SIZE
            buffer[offset:offset+PIXEL_SIZE] = WHITE if pixel else BLACK
        return buffer

    def step(self):
        # fetch (each instruction is two bytes long)
        opcode = self.mem.read_word(self.pc)
        self._goto_next_instruction()
        # decode + execute
        self.execute(opcode)

    def execute(self, opcode):
        instruction = self.decode(opcode)
        instruction(opcode)

    # ********** DECODING
    def decode(self, opcode):
        """decode opcodes using masks and return respective function"""
        # the patterns listed under each mask never collide with the ones of another mask
        # so the order in which masks are tried does not change the result
        masks = {
            0xFFFF: [0x00E0,0x00EE],
            0xF0FF: [0xE09E,0xE0A1,0xF007,0xF00A,0xF015,0xF018,0xF01E,0xF029,0xF033,0xF055,0xF065],
            0xF00F: [0x8000,0x8001,0x8002,0x8003,0x8004,0x8005,0x8006,0x8007,0x800E],
            0xF000: [0x1000,0x2000,0x3000,0x4000,0x5000,0x6000,0x7000,0x9000,0xA000,0xB000,0xC000,0xD000],
        }
        for m, ops in masks.items():
            if (opcode & m) in ops:
                return self.instructions[opcode & m]
        return self._not_implemented

    def _not_implemented(self, opcode):
        address = (self.pc - 2) % MEMORY_SIZE
        if self.strict:
            raise UnimplementedOpcode(opcode, address)
        self.unimplemented += 1
        logger.warning(f"Unimplemented opcode 0x{opcode:04x} at 0x{address:03x}, skipped")

    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) % MEMORY_SIZE

    def _set_vf(self, flag):
        self.v_regs[0xF] = flag

    # ********** FLOW CONTROL
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: CLS")
    def _clear_screen(self, opcode):
        self.vmem = [0] * SCREEN_WIDTH * SCREEN_HEIGHT
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: RET")
    def _return(self, opcode):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: JP 0x{address:03x}")
    def _jump(self, opcode):
        address = opcode & 0x0FFF
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: CALL 0x{address:03x}")
    def _call_addr(self, opcode):
        address = opcode & 0x0FFF
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: JP V0, 0x{address:03x}")
    def _jump_plus(self, opcode):
        address = opcode & 0x0FFF
        v0 = self.v_regs[0x0]
        self.pc = (address + v0) % MEMORY_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SE V{x:X}, {comparison_value}")
    def _skip_if_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SNE V{x:X}, {comparison_value}")
    def _skip_if_not_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    # ********** REGISTERS
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD V{x:X}, {value}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: ADD V{x:X}, {value}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    # the add and subtract instructions below read their operands first
    # and write VF last, so that x == 0xF ends up holding the flag
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, opcode):
        """set Vx = Vx + Vy, set VF = carry"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF
        self._set_vf(1 if total > 0xFF else 0)
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, opcode):
        """set Vx = Vx - Vy, set VF = NOT borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vx - vy) & 0xFF
        self._set_vf(1 if vx >= vy else 0)
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, opcode):
        """set Vx = Vy - Vx, set VF = NOT borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vy - vx) & 0xFF
        self._set_vf(1 if vy >= vx else 0)
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SHR V{x:X}, V{y:X}")
    def _shr(self, opcode):
        """set Vx = Vy SHR 1, VF takes the bit shifted out of the original Vx"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        LSB = self.v_regs[x] & 0x1
        shifted = self.v_regs[y] >> 1     # compatibility quirk 2
        self._set_vf(LSB)
        self.v_regs[x] = shifted          # with x == 0xF the result overwrites the flag
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SHL V{x:X}, V{y:X}")
    def _shl(self, opcode):
        """set Vx = Vy SHL 1, VF takes the bit shifted out of the original Vx"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        MSB = (self.v_regs[x] & 0x80) >> 7
        shifted = (self.v_regs[y] << 1) & 0xFF     # compatibility quirk 2
        self._set_vf(MSB)
        self.v_regs[x] = shifted          # with x == 0xF the result overwrites the flag
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    # ********** INDEX REGISTER AND MEMORY
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD I, 0x{value:03x}")
    def _set_idx(self, opcode):
        value = opcode & 0x0FFF
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: ADD I, V{register:X}")
    def _add_to_idx(self, opcode):
        """set I = I + Vx, VF = 1 when I goes past 0xFFF (Amiga behaviour), VF untouched otherwise"""
        register = (opcode & 0x0F00) >> 8
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        if self.idx > 0x0FFF:
            self._set_vf(1)
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD F, V{register:X}")
    def _select_char(self, opcode):
        """set I to the font glyph base address selected by the low nibble of Vx"""
        register = (opcode & 0x0F00) >> 8
        self.idx = FONT_START_ADDRESS + (self.v_regs[register] & 0xF)
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD B, V{x:X}")
    def _bcd_repr(self, opcode):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = (opcode & 0x0F00) >> 8
        value = self.v_regs[x]
        digits = (value // 100, (value // 10) % 10, value % 10)
        for offset, digit in enumerate(digits):
            self.mem[(self.idx + offset) % MEMORY_SIZE] = digit
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD [I], V{x:X}")
    def _store_vregs(self, opcode):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        for k in range(x + 1):
            self.mem[(self.idx + k) % MEMORY_SIZE] = self.v_regs[k]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD V{x:X}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        for k in range(x + 1):
            self.v_regs[k] = self.mem[(self.idx + k) % MEMORY_SIZE]
        return locals()

    # ********** TIMERS AND KEYPAD
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD V{x:X}, DT")
    def _set_vx_dt(self, opcode):
        x = (opcode & 0x0F00) >> 8
        self.v_regs[x] = self.dt
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD DT, V{x:X}")
    def _set_dt_vx(self, opcode):
        x = (opcode & 0x0F00) >> 8
        self.dt = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD ST, V{register:X}")
    def _set_st(self, opcode):
        register = (opcode & 0x0F00) >> 8
        self.st = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SKP V{x:X}")
    def _skip_if_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x] & 0xF
        if self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: SKNP V{x:X}")
    def _skip_if_not_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x] & 0xF
        if not self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:03x}    instruction: LD V{x:X}, K")
    def _wait_keypress(self, opcode):
        """wait for a key press and store its value in Vx"""
        x = (opcode & 0x0F00) >> 8
        if self.keypad.untouched():
            self.pc = (self.pc - 0x2) % MEMORY_SIZE     # stay on the same instruction until a key is pressed
        else:
            self.v_regs[x] = self.keypad.first()
        return locals()

    # ********** DISPLAY
    @asm("mem_addr: 0x{mem_addr:03x}    instruction: DRW V{x:X}, V{y:X}, {n_bytes}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        origin_x = self.v_regs[x] % SCREEN_WIDTH
        origin_y = self.v_regs[y] % SCREEN_HEIGHT
        n_bytes = opcode & 0x000F
        self._set_vf(0)
        # step through each sprite byte
        for row in range(n_bytes):
            sprite_byte = self.mem[(self.idx + row) % MEMORY_SIZE]
            # sprites wrap around the screen edges instead of being clipped
            y_coordinate = (origin_y + row) % SCREEN_HEIGHT
            for col in range(8):    # most significant bit first
                if not (sprite_byte >> (7 - col)) & 0x1:
                    continue
                x_coordinate = (origin_x + col) % SCREEN_WIDTH
                pos = x_coordinate + y_coordinate * SCREEN_WIDTH
                pixel_state = self.vmem[pos]
                # every lit sprite bit overwrites VF with the previous pixel value
                # so the last one drawn decides the collision flag
                self._set_vf(pixel_state)
                self.vmem[pos] = pixel_state ^ 1
        return locals()
