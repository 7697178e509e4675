import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.config import DEFAULT_MESSAGES, load_commands, load_messages


class ConfigFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def test_commands_file_overrides_and_normalises(self) -> None:
        path = self.root / 'commands.yml'
        path.write_text("prefix: '?'\nrequest: song\nskip: [skip, next]\n", encoding='utf-8')

        commands = load_commands(str(path))

        self.assertEqual(commands['prefix'], ['?'])
        self.assertEqual(commands['request'], ['song'])
        self.assertEqual(commands['skip'], ['skip', 'next'])
        self.assertEqual(commands['now_playing'], ['np'])

    def test_messages_file_merges_with_defaults(self) -> None:
        path = self.root / 'messages.yml'
        path.write_text("skipped: 'Next one!'\n", encoding='utf-8')

        messages = load_messages(path)

        self.assertEqual(messages['skipped'], 'Next one!')
        self.assertEqual(messages['queue_empty'], DEFAULT_MESSAGES['queue_empty'])

    def test_missing_or_empty_files_use_defaults(self) -> None:
        empty = self.root / 'empty.yml'
        empty.write_text('', encoding='utf-8')

        self.assertEqual(load_messages(self.root / 'missing.yml'), DEFAULT_MESSAGES)
        self.assertEqual(load_messages(empty), DEFAULT_MESSAGES)


if __name__ == '__main__':
    unittest.main()
