#!/usr/bin/env python3
"""
Test suite for the cryptbatch command line interface
"""

import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Add parent directory to path to import cryptbatch
sys.path.insert(0, str(Path(__file__).parent.parent))
from cryptbatch_cli import (
    PASSPHRASE_ENV,
    VALID_OPERATIONS,
    create_config_file,
    load_config_file,
    main,
)


class TestConfigFile:
    """Config file helpers"""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for testing"""
        temp_dir = tempfile.mkdtemp()
        yield Path(temp_dir)
        shutil.rmtree(temp_dir)

    def test_config_loading(self, temp_dir):
        config_file = temp_dir / "config"
        config_file.write_text(
            "# comment\n"
            "default_algorithm = ecc\n"
            "verify_signatures = false\n"
            "chunk_size = 4096\n"
            'key_store_path = "~/keys"\n'
            "extensions = [pdf, 'txt']\n"
            "\n"
        )
        config = load_config_file(config_file)
        assert config == {
            "default_algorithm": "ecc",
            "verify_signatures": False,
            "chunk_size": 4096,
            "key_store_path": "~/keys",
            "extensions": ["pdf", "txt"],
        }

    def test_missing_config_is_empty(self, temp_dir):
        assert load_config_file(temp_dir / "absent") == {}

    def test_create_config_template(self, temp_dir):
        """The template loads as an empty config since every line is commented"""
        config_file = temp_dir / "nested" / "config"
        assert create_config_file(config_file)
        assert "on_exists" in config_file.read_text()
        assert load_config_file(config_file) == {}


class TestCommandLine:
    """End-to-end runs of main()"""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for testing"""
        temp_dir = tempfile.mkdtemp()
        yield Path(temp_dir)
        shutil.rmtree(temp_dir)

    @pytest.fixture
    def home(self, temp_dir, monkeypatch):
        """Isolated home directory with a fixed passphrase"""
        home = temp_dir / "home"
        home.mkdir()
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.setenv(PASSPHRASE_ENV, "test passphrase")
        return home

    async def run(self, home, *argv):
        return await main([*argv, "--config", str(home / "cryptbatch.conf"), "--no-progress"])

    async def make_keys(self, home):
        for name in ("alice", "bob"):
            code = await self.run(
                home, "keygen", "--name", name.title(), "--email", f"{name}@example.com", "--algorithm", "ecc"
            )
            assert code == 0

    @pytest.mark.asyncio
    async def test_keygen_and_list(self, home, capsys):
        await self.make_keys(home)
        capsys.readouterr()

        assert await self.run(home, "list-keys") == 0
        out = capsys.readouterr().out
        assert "Alice <alice@example.com>" in out
        assert "Bob <bob@example.com>" in out
        assert "[private]" in out

        assert await self.run(home, "show-key", "bob@example.com") == 0
        assert "Algorithm:   ecc" in capsys.readouterr().out
        assert len(list((home / ".config" / "cryptbatch" / "keys").glob("*.json"))) == 2

    @pytest.mark.asyncio
    async def test_folder_round_trip(self, home, temp_dir, capsys):
        """encrypt-folder then decrypt-folder restores the files"""
        await self.make_keys(home)
        docs = temp_dir / "docs"
        (docs / "sub").mkdir(parents=True)
        (docs / "a.txt").write_text("alpha")
        (docs / "sub" / "b.txt").write_text("beta")

        code = await self.run(
            home, "encrypt-folder", str(docs), "-r", "bob@example.com", "--sign-with", "alice@example.com"
        )
        assert code == 0
        encrypted = temp_dir / "docs-encrypted"
        assert (encrypted / "a.txt.asc").exists()
        assert (encrypted / "sub" / "b.txt.asc").exists()
        assert "Encrypted files: 2" in capsys.readouterr().out

        restored = temp_dir / "restored"
        code = await self.run(home, "decrypt-folder", str(encrypted), str(restored), "-k", "bob@example.com")
        assert code == 0
        assert (restored / "a.txt").read_text() == "alpha"
        assert (restored / "sub" / "b.txt").read_text() == "beta"
        out = capsys.readouterr().out
        assert "Decrypted files: 2" in out
        assert "Signature failures" not in out

    @pytest.mark.asyncio
    async def test_folder_dry_run_skips_unlock(self, home, temp_dir, capsys, monkeypatch):
        """--dry-run lists the plan without asking for a passphrase"""
        await self.make_keys(home)
        docs = temp_dir / "docs"
        docs.mkdir()
        (docs / "a.txt").write_text("alpha")
        assert await self.run(home, "encrypt-folder", str(docs), "-r", "bob@example.com") == 0
        capsys.readouterr()

        monkeypatch.delenv(PASSPHRASE_ENV)

        def no_prompt(prompt=""):
            raise AssertionError(f"unexpected passphrase prompt: {prompt}")

        monkeypatch.setattr("getpass.getpass", no_prompt)

        restored = temp_dir / "restored"
        code = await self.run(
            home, "decrypt-folder", str(temp_dir / "docs-encrypted"), str(restored),
            "-k", "bob@example.com", "--dry-run",
        )
        assert code == 0
        out = capsys.readouterr().out
        assert "Would process: 1 files" in out
        assert "Decrypted files" not in out
        assert not restored.exists()

        code = await self.run(
            home, "encrypt-folder", str(docs), str(temp_dir / "again"), "-r", "bob@example.com",
            "--sign-with", "alice@example.com", "--dry-run",
        )
        assert code == 0
        out = capsys.readouterr().out
        assert "Would process: 1 files" in out
        assert "Encrypted files" not in out
        assert not (temp_dir / "again").exists()

    @pytest.mark.asyncio
    async def test_abort_exit_code(self, home, temp_dir, capsys):
        await self.make_keys(home)
        docs = temp_dir / "docs"
        docs.mkdir()
        (docs / "a.txt").write_text("a")
        output = temp_dir / "out"
        output.mkdir()
        (output / "a.txt.pgp").write_bytes(b"existing")

        code = await self.run(
            home, "encrypt-folder", str(docs), str(output), "-r", "bob@example.com",
            "--format", "binary", "--on-exists", "abort",
        )
        assert code == 1
        assert "Batch aborted" in capsys.readouterr().out
        assert (output / "a.txt.pgp").read_bytes() == b"existing"

    @pytest.mark.asyncio
    async def test_file_and_message_commands(self, home, temp_dir, capsys):
        await self.make_keys(home)
        letter = temp_dir / "letter.txt"
        letter.write_text("meet at noon")

        assert await self.run(home, "encrypt-file", str(letter), "-r", "alice@example.com", "--format", "binary") == 0
        assert (temp_dir / "letter.txt.pgp").exists()
        letter.unlink()
        assert await self.run(home, "decrypt-file", str(temp_dir / "letter.txt.pgp"), "-k", "alice@example.com") == 0
        assert letter.read_text() == "meet at noon"

        message = temp_dir / "msg.asc"
        assert await self.run(home, "encrypt", str(letter), str(message), "-r", "bob@example.com") == 0
        capsys.readouterr()
        assert await self.run(home, "decrypt", str(message), "-k", "bob@example.com") == 0
        assert "meet at noon" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_sign_and_verify(self, home, temp_dir, capsys):
        await self.make_keys(home)
        text = temp_dir / "release.txt"
        text.write_text("v1.0")
        signed = temp_dir / "release.txt.signed"

        assert await self.run(home, "sign", str(text), str(signed), "-k", "alice@example.com") == 0
        capsys.readouterr()
        assert await self.run(home, "verify", str(signed)) == 0
        assert "Good signature from Alice <alice@example.com>" in capsys.readouterr().out

        signed.write_text(signed.read_text().replace("v1.0", "v9.9"))
        assert await self.run(home, "verify", str(signed)) == 1

    @pytest.mark.asyncio
    async def test_notes(self, home, temp_dir, capsys):
        await self.make_keys(home)
        body = temp_dir / "body.txt"
        body.write_text("the safe code is 1234")

        assert await self.run(home, "note-add", str(body), "--title", "Safe", "-k", "alice@example.com") == 0
        note_id = capsys.readouterr().out.strip().split()[-1]

        assert await self.run(home, "note-list", "-k", "alice@example.com") == 0
        assert "Safe" in capsys.readouterr().out

        assert await self.run(home, "note-show", note_id, "-k", "alice@example.com") == 0
        out = capsys.readouterr().out
        assert "Safe" in out
        assert "the safe code is 1234" in out

    @pytest.mark.asyncio
    async def test_errors(self, home, temp_dir, capsys):
        """Configuration problems exit with status 1 and an Error: line"""
        assert await self.run(home, "encrypt-folder", str(temp_dir / "missing"), "-r", "nobody") == 1
        assert "Error:" in capsys.readouterr().err

        await self.make_keys(home)
        assert await self.run(home, "encrypt-folder", str(temp_dir / "missing"), "-r", "bob@example.com") == 1
        assert "Error:" in capsys.readouterr().err

        assert await self.run(home, "delete-key", "bob@example.com") == 1
        assert await self.run(home, "delete-key", "bob@example.com", "--force") == 0

    @pytest.mark.asyncio
    async def test_unknown_operation_suggestion(self, home, capsys):
        assert await self.run(home, "encrpyt-folder") == 1
        assert "Did you mean 'encrypt-folder'?" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_create_config_flag(self, home, capsys):
        config_path = home / "custom.conf"
        assert await main(["--create-config", "--config", str(config_path)]) == 0
        assert config_path.exists()

    def test_operations_have_handlers(self):
        from cryptbatch_cli import CryptBatchCli

        for operation in VALID_OPERATIONS:
            assert hasattr(CryptBatchCli, "cmd_" + operation.replace("-", "_"))
