import argparse
import logging
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import (
    FRAME_SIZE,
    SCREEN_HEIGHT,
    SCREEN_RESOLUTION,
    SCREEN_WIDTH,
    Chip8Error,
    LoadError,
    Machine,
)


logger = logging.getLogger(__name__)


# ******************** STATIC SECTION
# the left side of a QWERTY keyboard, row by row, mapped on keys 0x0..0xF
KEY_MAPPINGS = {
    K_1: 0x0,
    K_2: 0x1,
    K_3: 0x2,
    K_4: 0x3,
    K_q: 0x4,
    K_w: 0x5,
    K_e: 0x6,
    K_r: 0x7,
    K_a: 0x8,
    K_s: 0x9,
    K_d: 0xA,
    K_f: 0xB,
    K_z: 0xC,
    K_x: 0xD,
    K_c: 0xE,
    K_v: 0xF,
}

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
FPS = 60                # the delay timer is decremented once per frame
CYCLES_PER_FRAME = 10
SCALE = 10
LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("-c", "--cycles", type=int, default=CYCLES_PER_FRAME, help="instructions executed per frame")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every executed instruction")
    parser.add_argument("--strict", action="store_true", help="stop on unimplemented opcodes")
    return parser.parse_args(argv)

def setup_logging(verbose=False):
    level = logging.DEBUG if verbose or DEBUG else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)

def read_rom(path):
    with open(path, mode='rb') as f:
        return f.read()

def create_machine(path, strict=False):
    """build a machine and load the ROM at path into it, exit if the ROM can't be loaded"""
    machine = Machine(strict=strict)
    try:
        machine.load(read_rom(path))
    except (OSError, LoadError) as e:
        sys.exit(f"Unable to load ROM {path}: {e}")
    logger.info(f"The ROM at path {path} has been loaded successfully")
    return machine

def handle_key(machine, event):
    """forward a pygame key event to the machine keypad, return False if the event asks to quit"""
    if event.key == pygame.K_ESCAPE:
        return False
    if event.key in KEY_MAPPINGS:
        machine.set_key(KEY_MAPPINGS[event.key], event.type == pygame.KEYDOWN)
    return True


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE):
        self.w, self.h, self.scale = w, h, s
        self.frame = bytearray(FRAME_SIZE)
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )

    def refresh(self, machine):
        """copy the machine framebuffer, scaled, on the window surface"""
        machine.render(self.frame)
        image = pygame.image.frombuffer(self.frame, SCREEN_RESOLUTION, "RGBA")
        pygame.transform.scale(image, self.surface.get_size(), self.surface)
        pygame.display.flip()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    setup_logging(args.verbose)
    machine = create_machine(args.file, strict=args.strict)
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    screen = Screen(s=args.scale)
    # emulation loop
    run = True
    try:
        while run:
            # process user input
            # loop throught the event queue
            for event in pygame.event.get():
                if event.type in (pygame.KEYDOWN, pygame.KEYUP):
                    run = handle_key(machine, event) and run
                elif event.type == pygame.QUIT:
                    run = False
            for _ in range(args.cycles):
                machine.step()
            machine.tick_timer()
            screen.refresh(machine)
            clock.tick(FPS)
    except Chip8Error as e:
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{e}\n{machine}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
