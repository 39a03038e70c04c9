#!/usr/bin/env python3
"""
cryptbatch_cli - command line front end for cryptbatch

Key management, message and file encryption, signatures, encrypted notes and
the batch folder operations, all behind one ``cryptbatch <operation>``
command.
"""

import argparse
import asyncio
import difflib
import getpass
import json
import os
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from cryptbatch import (
    CollisionPolicy,
    ConfigurationError,
    CryptBatchError,
    FolderCrypter,
    FormatMode,
    OutputFormat,
    __version__,
    default_decrypt_filter,
    parse_extension_filter,
    resolve_path,
    run_in_thread,
)
from cryptbatch_engine import SUPPORTED_ALGORITHMS, CryptoEngine, UnlockedKey, format_fingerprint
from cryptbatch_store import (
    KeyStore,
    NoteRecord,
    NoteStore,
    StoredKey,
    default_config_dir,
    ensure_config_dirs,
)

PASSPHRASE_ENV = "CRYPTBATCH_PASSPHRASE"
DEFAULT_CONFIG_PATH = default_config_dir() / "config"

VALID_OPERATIONS = [
    "keygen",
    "list-keys",
    "show-key",
    "import-key",
    "export-key",
    "delete-key",
    "encrypt",
    "decrypt",
    "encrypt-file",
    "decrypt-file",
    "encrypt-folder",
    "decrypt-folder",
    "sign",
    "verify",
    "note-add",
    "note-list",
    "note-show",
]


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# cryptbatch Configuration
# Uncomment and modify values as needed

# Where keys and encrypted notes are stored
# key_store_path = ~/.config/cryptbatch/keys
# vault_path = ~/.config/cryptbatch/vault

# Algorithm for new keys: rsa2048, rsa4096 or ecc
# default_algorithm = rsa4096

# Output format for encryption: armored or binary
# output_format = armored

# What to do when an output file already exists: overwrite, skip or abort
# on_exists = skip

# Check signatures of decrypted files against the known keys
# verify_signatures = true

# Size of plaintext chunks inside encrypted files (in bytes)
# chunk_size = 65536

# Buffer size for file reads (in bytes)
# buffer_size = 65536

# Number of failed files listed in batch summaries
# failure_preview = 5

# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except (OSError, PermissionError) as e:
        print(f"Error creating config file: {e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file with error handling"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    # Parse different value types
                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    elif value.startswith("[") and value.endswith("]"):
                        items = [
                            item.strip().strip("\"'") for item in value[1:-1].split(",")
                        ]
                        config[key] = [item for item in items if item]
                    else:
                        config[key] = value

    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}", file=sys.stderr)

    return config


def get_passphrase(prompt: str, confirm: bool = False) -> str:
    """Passphrase from $CRYPTBATCH_PASSPHRASE, else an interactive prompt"""
    passphrase = os.environ.get(PASSPHRASE_ENV)
    if passphrase:
        return passphrase

    passphrase = getpass.getpass(prompt)
    if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
        raise ConfigurationError("Passphrases do not match")
    return passphrase


class CryptBatchCli:
    """Runs one command line operation against the configured stores"""

    def __init__(self, config: Dict, progress: bool = True):
        self.config = config
        self.progress = progress

        paths = ensure_config_dirs(config)
        self.key_store = KeyStore(paths["key_store_path"])
        self.note_store = NoteStore(paths["vault_path"])
        self.engine = CryptoEngine(config)
        self.crypter = FolderCrypter(config, engine=self.engine)
        self.logger = self.crypter.logger
        self.console = self.crypter.console

    async def run(self, args: argparse.Namespace) -> int:
        handler = getattr(self, "cmd_" + args.operation.replace("-", "_"))
        return await handler(args)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(self, line: str, style: Optional[str] = None):
        if self.console and self.crypter.is_tty:
            self.console.print(line, style=style, markup=False, highlight=False)
        else:
            print(line)

    def _find_key(self, query: Optional[str]) -> StoredKey:
        if not query:
            raise ConfigurationError("No key given")
        key = self.key_store.find_key(query)
        if key is None:
            raise ConfigurationError(f"Key not found: {query}")
        return key

    def _private_key(self, query: Optional[str]) -> StoredKey:
        if query:
            key = self._find_key(query)
        else:
            candidates = [k for k in self.key_store.list_keys() if k.has_private_key]
            if len(candidates) != 1:
                raise ConfigurationError("Select a private key with --key")
            key = candidates[0]
        if not key.has_private_key:
            raise ConfigurationError(f"No private key stored for {key.label}")
        return key

    def _unlock(self, key: StoredKey) -> UnlockedKey:
        passphrase = get_passphrase(f"Passphrase for {key.label}: ")
        return self.engine.unlock_private_key(key.private_key, passphrase)

    def _recipients(self, args: argparse.Namespace) -> List[str]:
        if not args.recipient:
            raise ConfigurationError("At least one recipient is required (-r/--recipient)")
        return [self._find_key(query).public_key for query in args.recipient]

    def _signing_key(self, args: argparse.Namespace) -> Optional[UnlockedKey]:
        if not args.sign_with:
            return None
        return self._unlock(self._private_key(args.sign_with))

    def _verification_keys(self, args: argparse.Namespace) -> Optional[List[str]]:
        if args.no_verify or not self.config.get("verify_signatures", True):
            return None
        return [key.public_key for key in self.key_store.list_keys()]

    def _output_format(self, args: argparse.Namespace) -> OutputFormat:
        return OutputFormat(args.format or self.config.get("output_format", "armored"))

    def _collision_policy(self, args: argparse.Namespace) -> CollisionPolicy:
        return CollisionPolicy(args.on_exists or self.config.get("on_exists", "skip"))

    def _signer_label(self, fingerprint: Optional[str]) -> str:
        key = self.key_store.get_key(fingerprint) if fingerprint else None
        return key.label if key else format_fingerprint(fingerprint or "unknown")

    def _read_text(self, target: Optional[str]) -> str:
        if not target or target == "-":
            return sys.stdin.read()
        path = resolve_path(target)
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e

    def _write_text(self, output: Optional[str], text: str, force: bool):
        if not output:
            sys.stdout.write(text if text.endswith("\n") else text + "\n")
            return
        path = resolve_path(output)
        if path.exists() and not force:
            raise ConfigurationError(f"Output file already exists: {path} (use --force to overwrite)")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        self.logger.info(f"Saved to {path}")

    def _report_verification(self, verified: Optional[bool]):
        if verified is True:
            self._emit("Signature verified", style="green")
        elif verified is False:
            self._emit("WARNING: signature could not be verified", style="yellow")

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def cmd_keygen(self, args: argparse.Namespace) -> int:
        if not args.name or not args.email:
            raise ConfigurationError("keygen needs --name and --email")
        algorithm = args.algorithm or self.config.get("default_algorithm", "rsa4096")
        passphrase = get_passphrase("Passphrase for the new key: ", confirm=True)

        self.logger.info(f"Generating {algorithm} key for {args.name} <{args.email}>")
        pair = await run_in_thread(
            self.engine.generate_key_pair, args.name, args.email, passphrase, algorithm
        )
        self.key_store.save_key(
            StoredKey(
                name=args.name,
                email=args.email,
                fingerprint=pair.fingerprint,
                key_id=pair.key_id,
                public_key=pair.public_key,
                private_key=pair.private_key,
                created=pair.created,
                algorithm=pair.algorithm,
            )
        )
        self._emit(f"Generated key {format_fingerprint(pair.fingerprint)}", style="green")
        return 0

    async def cmd_list_keys(self, args: argparse.Namespace) -> int:
        keys = self.key_store.list_keys()
        if not keys:
            self._emit("No keys found.")
            return 0
        for key in keys:
            marker = "  [private]" if key.has_private_key else ""
            self._emit(f"{key.key_id}  {key.algorithm:<8} {key.label}{marker}")
        return 0

    async def cmd_show_key(self, args: argparse.Namespace) -> int:
        key = self._find_key(args.target)
        self._emit(f"Name:        {key.name}")
        self._emit(f"Email:       {key.email}")
        self._emit(f"Fingerprint: {format_fingerprint(key.fingerprint)}")
        self._emit(f"Key ID:      {key.key_id}")
        self._emit(f"Algorithm:   {key.algorithm}")
        self._emit(f"Created:     {key.created.isoformat(timespec='seconds')}")
        self._emit(f"Private key: {'yes' if key.has_private_key else 'no'}")
        return 0

    async def cmd_import_key(self, args: argparse.Namespace) -> int:
        pem = self._read_text(args.target)
        private_pem = None
        if "PRIVATE KEY" in pem:
            private_pem = pem
            public_pem = self.engine.unlock_private_key(
                pem, get_passphrase("Passphrase for the imported key: ")
            ).public_key
        else:
            public_pem = pem
        info = self.engine.read_public_key_info(public_pem)

        if self.key_store.key_exists(info["fingerprint"]) and not args.force:
            raise ConfigurationError(
                f"Key {format_fingerprint(info['fingerprint'])} already exists (use --force to replace)"
            )
        name = args.name or (Path(args.target).stem if args.target and args.target != "-" else "Imported key")
        self.key_store.save_key(
            StoredKey(
                name=name,
                email=args.email or "",
                fingerprint=info["fingerprint"],
                key_id=info["key_id"],
                public_key=info["public_key"],
                private_key=private_pem,
                created=datetime.now(timezone.utc),
                algorithm=info["algorithm"],
            )
        )
        self._emit(f"Imported key {format_fingerprint(info['fingerprint'])}", style="green")
        return 0

    async def cmd_export_key(self, args: argparse.Namespace) -> int:
        key = self._find_key(args.target)
        self._write_text(args.output, key.public_key, args.force)
        return 0

    async def cmd_delete_key(self, args: argparse.Namespace) -> int:
        key = self._find_key(args.target)
        if not args.force:
            raise ConfigurationError(f"Refusing to delete {key.label} without --force")
        if not self.key_store.delete_key(key.fingerprint):
            raise ConfigurationError(f"Could not delete key {key.fingerprint}")
        self._emit(f"Deleted key {format_fingerprint(key.fingerprint)}")
        return 0

    # ------------------------------------------------------------------
    # Messages and signatures
    # ------------------------------------------------------------------

    async def cmd_encrypt(self, args: argparse.Namespace) -> int:
        recipients = self._recipients(args)
        signing_key = self._signing_key(args)
        text = self._read_text(args.target)
        armored = await self.engine.encrypt_message(text, recipients, signing_key=signing_key)
        self._write_text(args.output, armored, args.force)
        return 0

    async def cmd_decrypt(self, args: argparse.Namespace) -> int:
        key = self._unlock(self._private_key(args.key))
        armored = self._read_text(args.target)
        text, verified = await self.engine.decrypt_message(
            armored, key, verification_keys=self._verification_keys(args)
        )
        self._write_text(args.output, text, args.force)
        self._report_verification(verified)
        return 0

    async def cmd_sign(self, args: argparse.Namespace) -> int:
        key = self._unlock(self._private_key(args.key or args.sign_with))
        text = self._read_text(args.target)
        self._write_text(args.output, self.engine.sign_message(text, key, detached=args.detached), args.force)
        return 0

    async def cmd_verify(self, args: argparse.Namespace) -> int:
        message = self._read_text(args.target)
        signature = self._read_text(args.signature) if args.signature else None
        public_keys = [key.public_key for key in self.key_store.list_keys()]
        verified, signer = self.engine.verify_message(message, public_keys, signature=signature)
        if verified:
            self._emit(f"Good signature from {self._signer_label(signer)}", style="green")
            return 0
        self._emit("Signature could not be verified", style="red")
        return 1

    # ------------------------------------------------------------------
    # Files and folders
    # ------------------------------------------------------------------

    async def cmd_encrypt_file(self, args: argparse.Namespace) -> int:
        recipients = self._recipients(args)
        signing_key = self._signing_key(args)
        target = await self.crypter.encrypt_file(
            self._require_target(args),
            args.output,
            recipients=recipients,
            output_format=self._output_format(args),
            signing_key=signing_key,
            force=args.force,
        )
        self._emit(f"Encrypted: {target}", style="green")
        return 0

    async def cmd_decrypt_file(self, args: argparse.Namespace) -> int:
        key = self._unlock(self._private_key(args.key))
        target, outcome = await self.crypter.decrypt_file(
            self._require_target(args),
            args.output,
            key=key,
            input_format=FormatMode(args.input_format or "auto"),
            verification_keys=self._verification_keys(args),
            force=args.force,
        )
        self._emit(f"Decrypted: {target}", style="green")
        self._report_verification(outcome.verified)
        return 0

    def _print_summary(self, result, verb: str) -> int:
        for line in result.summary_lines(preview=self.crypter.failure_preview, verb=verb):
            style = "red" if line.startswith(("Failed", "Batch aborted")) else None
            self._emit(line, style=style)
        return 0 if result.ok else 1

    async def cmd_encrypt_folder(self, args: argparse.Namespace) -> int:
        recipients = self._recipients(args)
        if self.crypter.dry_run:
            signing_key = None
            if args.sign_with:
                self._private_key(args.sign_with)
        else:
            signing_key = self._signing_key(args)
        result = await self.crypter.encrypt_folder(
            self._require_target(args),
            args.output,
            recipients=recipients,
            output_format=self._output_format(args),
            extensions=parse_extension_filter(args.ext or "", frozenset()),
            collision_policy=self._collision_policy(args),
            signing_key=signing_key,
            progress=self.progress,
        )
        if self.crypter.dry_run:
            return 0
        return self._print_summary(result, "Encrypted")

    async def cmd_decrypt_folder(self, args: argparse.Namespace) -> int:
        stored = self._private_key(args.key)
        key = None if self.crypter.dry_run else self._unlock(stored)
        mode = FormatMode(args.input_format or "auto")
        result = await self.crypter.decrypt_folder(
            self._require_target(args),
            args.output,
            key=key,
            input_format=mode,
            extensions=parse_extension_filter(args.ext or "", default_decrypt_filter(mode)),
            collision_policy=self._collision_policy(args),
            verification_keys=self._verification_keys(args),
            progress=self.progress,
        )
        if self.crypter.dry_run:
            return 0
        return self._print_summary(result, "Decrypted")

    @staticmethod
    def _require_target(args: argparse.Namespace) -> str:
        if not args.target:
            raise ConfigurationError(f"{args.operation} needs an input path")
        return args.target

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def cmd_note_add(self, args: argparse.Namespace) -> int:
        if not args.title:
            raise ConfigurationError("note-add needs --title")
        owner = self._private_key(args.key)
        body = self._read_text(args.target)
        now = datetime.now(timezone.utc).isoformat()
        payload = json.dumps({"title": args.title, "body": body, "created": now, "updated": now})
        encrypted = await self.engine.encrypt_message(payload, [owner.public_key])
        note = NoteRecord.new(encrypted)
        self.note_store.save_note(note)
        self._emit(f"Saved note {note.id}", style="green")
        return 0

    async def _open_note(self, note: NoteRecord, key: UnlockedKey) -> Dict:
        text, _ = await self.engine.decrypt_message(note.encrypted, key)
        return json.loads(text)

    async def cmd_note_list(self, args: argparse.Namespace) -> int:
        notes = self.note_store.list_notes()
        if not notes:
            self._emit("No notes found.")
            return 0
        key = self._unlock(self._private_key(args.key))
        for note in notes:
            try:
                title = (await self._open_note(note, key)).get("title", "")
            except (CryptBatchError, ValueError) as e:
                self.logger.debug(f"Cannot open note {note.id}: {e}")
                title = "<unreadable>"
            self._emit(f"{note.id}  {note.updated.isoformat(timespec='seconds')}  {title}")
        return 0

    async def cmd_note_show(self, args: argparse.Namespace) -> int:
        note = self.note_store.get_note(self._require_target(args))
        if note is None:
            raise ConfigurationError(f"Note not found: {args.target}")
        content = await self._open_note(note, self._unlock(self._private_key(args.key)))
        self._emit(content.get("title", ""), style="bold")
        self._emit(content.get("body", ""))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cryptbatch",
        description="Encrypt, decrypt and sign files and whole folder trees",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a key and list the key store
  %(prog)s keygen --name Alice --email alice@example.com --algorithm ecc
  %(prog)s list-keys

  # Encrypt a folder for Bob, writing ./docs-encrypted
  %(prog)s encrypt-folder ./docs -r bob@example.com

  # Only PDFs and text files, binary output, stop at the first existing file
  %(prog)s encrypt-folder ./docs ./out -r bob@example.com -x "pdf, txt" --format binary --on-exists abort

  # Decrypt a folder with mixed .asc/.pgp files
  %(prog)s decrypt-folder ./docs-encrypted -k alice@example.com

  # Single files and messages
  %(prog)s encrypt-file report.pdf -r bob@example.com --sign-with alice@example.com
  echo "hello" | %(prog)s encrypt -r bob@example.com

  # Preview a batch run without writing anything
  %(prog)s decrypt-folder ./in ./out -k alice@example.com --dry-run
        """,
    )

    parser.add_argument("operation", nargs="?", help="Operation to perform")
    parser.add_argument("target", nargs="?", help="Input file, folder, key or note id")
    parser.add_argument("output", nargs="?", help="Output file or folder")

    # Keys
    parser.add_argument(
        "-r", "--recipient", action="append", default=[],
        help="Recipient key (fingerprint, key id or email). Can be used multiple times.",
    )
    parser.add_argument("-k", "--key", help="Private key to decrypt or sign with")
    parser.add_argument("--sign-with", help="Sign encrypted output with this private key")
    parser.add_argument("--name", help="Name for keygen/import-key")
    parser.add_argument("--email", help="Email for keygen/import-key")
    parser.add_argument(
        "--algorithm", choices=SUPPORTED_ALGORITHMS, default=None, help="Key algorithm for keygen"
    )

    # Formats and filters
    parser.add_argument(
        "--format", choices=[f.value for f in OutputFormat], default=None,
        help="Encrypted output format (default: armored)",
    )
    parser.add_argument(
        "--input-format", choices=[m.value for m in FormatMode], default=None,
        help="Format of encrypted input; auto detects by extension",
    )
    parser.add_argument(
        "-x", "--ext", default=None,
        help='Comma-separated extension filter for folder runs, e.g. "pdf, .txt"',
    )
    parser.add_argument(
        "--on-exists", choices=[p.value for p in CollisionPolicy], default=None,
        help="What to do when an output file exists in folder runs (default: skip)",
    )

    # Signatures
    parser.add_argument("--no-verify", action="store_true", help="Do not check signatures")
    parser.add_argument("--detached", action="store_true", help="Create a detached signature")
    parser.add_argument("--signature", help="Detached signature file for verify")

    # Notes
    parser.add_argument("--title", help="Title for note-add")

    # Basic options
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Show what would be done"
    )
    parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite existing files"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )

    # Configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


async def main(argv: Optional[Sequence[str]] = None, handle_signals: bool = False) -> int:
    """Main entry point with comprehensive error handling"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        # Handle config creation
        if args.create_config:
            if create_config_file(args.config):
                print(f"Created default configuration file: {args.config}")
            else:
                print(f"Failed to create configuration file: {args.config}")
                return 1
            return 0

        if not args.operation:
            parser.error("an operation is required")

        # Fuzzy command matching for typos
        if args.operation not in VALID_OPERATIONS:
            close_matches = difflib.get_close_matches(
                args.operation, VALID_OPERATIONS, n=1, cutoff=0.6
            )
            if close_matches:
                print(
                    f"Unknown command '{args.operation}'. Did you mean '{close_matches[0]}'?",
                    file=sys.stderr,
                )
            else:
                print(
                    f"Unknown command '{args.operation}'. Valid commands: {', '.join(VALID_OPERATIONS)}",
                    file=sys.stderr,
                )
            return 1

        # Load configuration
        config = load_config_file(args.config)

        # Override config with command line arguments
        config.update(
            {
                "dry_run": args.dry_run,
                "verbose": args.verbose or config.get("verbose", False),
            }
        )

        cli = CryptBatchCli(config, progress=not args.no_progress)
        if handle_signals:
            cli.crypter.install_signal_handlers()
        return await cli.run(args)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except CryptBatchError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return asyncio.run(main(handle_signals=True))


if __name__ == "__main__":
    sys.exit(cli_main())
