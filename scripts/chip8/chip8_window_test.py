import os
import tempfile
import unittest

import pygame

from chip8_window import KEY_MAPPINGS, create_machine, get_args, handle_key
from chip8 import Machine


class TestArgs(unittest.TestCase):
    def test_defaults(self):
        args = get_args(["-f", "pong.ch8"])
        self.assertEqual(args.file, "pong.ch8")
        self.assertEqual(args.scale, 10)
        self.assertEqual(args.cycles, 10)
        self.assertFalse(args.verbose)
        self.assertFalse(args.strict)

    def test_options(self):
        args = get_args(["--file", "pong.ch8", "-s", "4", "-c", "20", "-v", "--strict"])
        self.assertEqual((args.scale, args.cycles), (4, 20))
        self.assertTrue(args.verbose)
        self.assertTrue(args.strict)

    def test_file_is_required(self):
        with self.assertRaises(SystemExit):
            get_args([])


class TestKeys(unittest.TestCase):
    def test_mapping_covers_keypad(self):
        self.assertEqual(sorted(KEY_MAPPINGS.values()), list(range(16)))
        self.assertEqual(KEY_MAPPINGS[pygame.K_1], 0x0)
        self.assertEqual(KEY_MAPPINGS[pygame.K_v], 0xF)

    def test_press_and_release(self):
        m = Machine()
        self.assertTrue(handle_key(m, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_w)))
        self.assertTrue(m.keypad[0x5])
        self.assertTrue(handle_key(m, pygame.event.Event(pygame.KEYUP, key=pygame.K_w)))
        self.assertFalse(m.keypad[0x5])

    def test_unmapped_key(self):
        m = Machine()
        self.assertTrue(handle_key(m, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_p)))
        self.assertTrue(m.keypad.untouched())

    def test_escape_quits(self):
        m = Machine()
        self.assertFalse(handle_key(m, pygame.event.Event(pygame.KEYDOWN, key=pygame.K_ESCAPE)))


class TestRomLoading(unittest.TestCase):
    def write_rom(self, data):
        fd, path = tempfile.mkstemp(suffix=".ch8")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self.addCleanup(os.remove, path)
        return path

    def test_load(self):
        m = create_machine(self.write_rom(bytes([0x12, 0x00])))
        self.assertEqual(m.read_word(0x200), 0x1200)

    def test_strict(self):
        m = create_machine(self.write_rom(bytes([0x12, 0x00])), strict=True)
        self.assertTrue(m.strict)

    def test_too_large(self):
        with self.assertRaises(SystemExit):
            create_machine(self.write_rom(bytes(4000)))

    def test_missing_file(self):
        with self.assertRaises(SystemExit):
            create_machine(os.path.join(tempfile.gettempdir(), "no-such-rom.ch8"))


if __name__ == "__main__":
    unittest.main()
