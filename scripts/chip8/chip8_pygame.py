import argparse
import logging
import sys
import threading

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8 import (
    DEBUG, DEFAULT_CLOCK_HZ, FONT_START_ADDRESS, MAX_ROM_SIZE,
    Chip8, Pacer, Quirks, RomLoadError, VMFault,
)


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}
HOST_KEYS = {v: k for k, v in KEY_MAPPINGS.items()}

FPS = 60
SCALE = 15
BLUE = pygame.Color(80, 69, 155, 255)
LIGHT_BLUE = pygame.Color(136, 126, 203, 255)
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

logger = logging.getLogger("chip8.pygame")


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--hz", type=int, default=DEFAULT_CLOCK_HZ, help="instructions per second")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--font-base", type=lambda v: int(v, 0), default=FONT_START_ADDRESS,
                        help="address of the font table, e.g. 0x50")
    parser.add_argument("--shift-vx", action="store_true",
                        help="8XY6/8XYE shift VX in place instead of shifting VY into VX")
    parser.add_argument("--increment-index", action="store_true",
                        help="FX55/FX65 advance I by X+1 like the COSMAC VIP")
    args = parser.parse_args(argv)
    if args.hz <= 0:
        parser.error("--hz must be positive")
    return args


def read_rom(path):
    """read the ROM file at path, raise RomLoadError if it can't be used"""
    try:
        with open(path, mode='rb') as f:
            rom = f.read()
    except OSError as e:
        raise RomLoadError(f"Cannot read the ROM at path {path}: {e}") from e
    if not rom:
        raise RomLoadError(f"The ROM at path {path} is empty")
    if len(rom) > MAX_ROM_SIZE:
        raise RomLoadError(f"The ROM at path {path} is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
    return rom


def translate_key(host_key):
    """return the CHIP-8 key bound to a pygame key code, or None"""
    return KEY_MAPPINGS.get(host_key)


def window_title(rom_name, beep):
    return f"{rom_name} - BEEP" if beep else rom_name


# ******************** I/O SECTION
class Screen:
    """pygame window presenting a chip8.Display, repainted only when the display changed"""
    def __init__(self, display, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.display = display
        self.scale = s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (display.w * self.scale, display.h * self.scale),
        )
        self.surface.fill(self.background)
        self._drawn_version = None

    def refresh(self):
        """copy the display out and repaint it, return True if something was drawn"""
        version, buffer = self.display.snapshot()
        if version == self._drawn_version:
            return False
        self.surface.fill(self.background)
        for index, lit in enumerate(buffer):
            if lit:
                x, y = index % self.display.w, index // self.display.w
                pygame.draw.rect(
                    self.surface,
                    self.foreground,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )
        pygame.display.flip()
        self._drawn_version = version
        return True


# ******************** THREADS SECTION
def run_machine(chip, stop, pacer):
    """body of the instruction thread, a fault is left on chip.fault for the host to report"""
    try:
        chip.run(stop, pacer)
    except VMFault:
        logger.debug("instruction loop stopped by a fault")
    finally:
        stop.set()


def handle_event(event, keypad):
    """feed one pygame event to the keypad, return False when the user asked to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        key = translate_key(event.key)
        if key is not None:
            keypad.press(key)     # register keypress
    elif event.type == pygame.KEYUP:
        key = translate_key(event.key)
        if key is not None:
            keypad.release(key)
    return True


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO, format=LOG_FORMAT)
    rom_name = os.path.basename(args.file)
    try:
        rom = read_rom(args.file)
        chip = Chip8(
            quirks=Quirks(shift_uses_vy=not args.shift_vx, increment_index=args.increment_index),
            font_base=args.font_base,
        )
        chip.mem.load_rom(rom)
    except (RomLoadError, ValueError) as e:
        sys.exit(f"********** THE EMULATOR COULD NOT START\n{e}")
    logger.info("The ROM at path %s has been loaded successfully (%r)", args.file, chip.quirks)

    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(rom_name)
    screen = Screen(chip.screen, args.scale)

    # the instruction loop owns the machine, only the display and the keypad are shared
    stop = threading.Event()
    worker = threading.Thread(target=run_machine, args=(chip, stop, Pacer(args.hz)), name="chip8-cpu", daemon=True)
    worker.start()

    beep = False
    run = True
    while run and not stop.is_set():
        # frames per second
        clock.tick(FPS)
        # process user input
        # loop throught the event queue
        for event in pygame.event.get():
            if not handle_event(event, chip.keypad):
                run = False
        screen.refresh()
        if chip.beep_requested() != beep:
            beep = not beep
            pygame.display.set_caption(window_title(rom_name, beep))

    stop.set()
    chip.keypad.close()     # wake up a pending FX0A
    worker.join(timeout=1)
    pygame.quit()
    if chip.fault is not None:
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{type(chip.fault).__name__}: {chip.fault}\n{chip}")


if __name__ == "__main__":
    main()
