#!/usr/bin/env python3
"""
cryptbatch_engine - hybrid public-key encryption engine for cryptbatch

Keys are RSA (2048/4096) or EC P-256 pairs built with the ``cryptography``
package. Every message gets a fresh AES-256-GCM session key which is wrapped
once per recipient (RSA-OAEP, or ECDH + HKDF + AES-GCM for EC keys). The body
is encrypted in fixed-size chunks so arbitrarily large files stream through
with bounded memory.

Container layout::

    "CBX1" | version u8 | header length u32 | JSON header
    record*  : flag u8 | length u32 | AES-GCM ciphertext
    [signature length u16 | signature]          (signed messages only)

Each record's nonce is the 8-byte header prefix followed by a big-endian u32
record counter; the AAD binds the header hash, the counter and the record
flag, and the last record carries the final flag so truncation is detected.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from cryptbatch import Artifact, CryptBatchError, OutputFormat, TransformResult

logger = logging.getLogger("cryptbatch.engine")


MAGIC = b"CBX1"
FORMAT_VERSION = 1
CIPHER_NAME = "AES-256-GCM"
NONCE_PREFIX_LEN = 8
GCM_NONCE_LEN = 12
TAG_LEN = 16
MAX_RECORDS = 0xFFFFFFFF
MAX_HEADER_LEN = 1 << 20

DEFAULT_CHUNK_SIZE = 64 * 1024
MIN_CHUNK_SIZE = 16
MAX_CHUNK_SIZE = 16 * 1024 * 1024

RECORD_DATA = 0
RECORD_FINAL = 1

ARMOR_BEGIN = "-----BEGIN CRYPTBATCH MESSAGE-----"
ARMOR_END = "-----END CRYPTBATCH MESSAGE-----"
SIGNED_BEGIN = "-----BEGIN CRYPTBATCH SIGNED MESSAGE-----"
SIGNATURE_BEGIN = "-----BEGIN CRYPTBATCH SIGNATURE-----"
SIGNATURE_END = "-----END CRYPTBATCH SIGNATURE-----"
ARMOR_LINE_LEN = 64
MAX_ARMOR_LINE = ARMOR_LINE_LEN * 4 + 64
ARMOR_BEGIN_BYTES = ARMOR_BEGIN.encode("ascii")
ARMOR_END_BYTES = ARMOR_END.encode("ascii")

WRAP_INFO = b"cryptbatch key wrap v1"
SUPPORTED_ALGORITHMS = ("rsa2048", "rsa4096", "ecc")
FINGERPRINT_LEN = 40


class EngineError(CryptBatchError):
    """Base exception for crypto engine errors"""

    pass


class FormatError(EngineError):
    """Input is not a well-formed cryptbatch message"""

    pass


class DecryptionError(EngineError):
    pass


class PassphraseError(EngineError):
    pass


class InvalidKeyError(EngineError):
    pass


@dataclass
class KeyPair:
    """Freshly generated key pair; the private key is passphrase-encrypted PEM"""

    public_key: str
    private_key: str
    fingerprint: str
    key_id: str
    user_id: str
    created: datetime
    algorithm: str


@dataclass(frozen=True)
class UnlockedKey:
    """Decrypted private key, usable for decryption and signing"""

    fingerprint: str
    algorithm: str
    private_key: Any

    @property
    def key_id(self) -> str:
        return self.fingerprint[-16:]

    @property
    def public_key(self) -> str:
        return _public_pem(self.private_key.public_key())


@dataclass
class _Header:
    raw: bytes
    digest: bytes
    chunk_size: int
    nonce_prefix: bytes
    recipients: List[Dict[str, str]]
    signer: Optional[str]
    filename: Optional[str]


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise FormatError(f"Invalid base64 data: {e}") from e


def _public_pem(public_key: Any) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def fingerprint_of(public_key: Any) -> str:
    """Upper-case hex fingerprint of a public key's DER encoding"""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest().upper()[:FINGERPRINT_LEN]


def format_fingerprint(fingerprint: str) -> str:
    """Group a fingerprint in blocks of four for display"""
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def _key_algorithm(key: Any) -> str:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return f"rsa{key.key_size}"
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return "ecc"
    raise InvalidKeyError(f"Unsupported key type: {type(key).__name__}")


def load_public_key(public_pem: str) -> Any:
    try:
        key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    except (ValueError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise InvalidKeyError(f"Invalid public key: {e}") from e
    _key_algorithm(key)
    return key


def _make_nonce(prefix: bytes, counter: int) -> bytes:
    return prefix + struct.pack(">I", counter)


def _record_aad(header_digest: bytes, counter: int, flag: int) -> bytes:
    return header_digest + struct.pack(">IB", counter, flag)


def _hkdf(shared: bytes, salt: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=WRAP_INFO).derive(shared)


def _wrap_session_key(public_key: Any, session_key: bytes) -> Dict[str, str]:
    fingerprint = fingerprint_of(public_key)
    if isinstance(public_key, rsa.RSAPublicKey):
        wrapped = public_key.encrypt(
            session_key,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )
        return {"fingerprint": fingerprint, "scheme": "rsa-oaep", "wrapped": _b64encode(wrapped)}

    ephemeral = ec.generate_private_key(public_key.curve)
    shared = ephemeral.exchange(ec.ECDH(), public_key)
    epk = ephemeral.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    nonce = os.urandom(GCM_NONCE_LEN)
    wrapped = nonce + AESGCM(_hkdf(shared, epk)).encrypt(
        nonce, session_key, fingerprint.encode("ascii")
    )
    return {
        "fingerprint": fingerprint,
        "scheme": "ecdh-p256",
        "epk": _b64encode(epk),
        "wrapped": _b64encode(wrapped),
    }


def _unwrap_session_key(private_key: Any, entry: Dict[str, str]) -> bytes:
    wrapped = _b64decode(entry.get("wrapped", ""))
    scheme = entry.get("scheme")
    try:
        if scheme == "rsa-oaep" and isinstance(private_key, rsa.RSAPrivateKey):
            return private_key.decrypt(
                wrapped,
                padding.OAEP(
                    mgf=padding.MGF1(algorithm=hashes.SHA256()),
                    algorithm=hashes.SHA256(),
                    label=None,
                ),
            )
        if scheme == "ecdh-p256" and isinstance(private_key, ec.EllipticCurvePrivateKey):
            epk = _b64decode(entry.get("epk", ""))
            peer = ec.EllipticCurvePublicKey.from_encoded_point(private_key.curve, epk)
            shared = private_key.exchange(ec.ECDH(), peer)
            nonce, sealed = wrapped[:GCM_NONCE_LEN], wrapped[GCM_NONCE_LEN:]
            return AESGCM(_hkdf(shared, epk)).decrypt(
                nonce, sealed, entry["fingerprint"].encode("ascii")
            )
    except (ValueError, InvalidTag) as e:
        raise DecryptionError("Cannot unwrap session key with this private key") from e
    raise DecryptionError(f"Key type does not match wrapping scheme {scheme!r}")


def _sign(private_key: Any, data: bytes) -> bytes:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(
            data,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
            hashes.SHA256(),
        )
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def _verify(public_key: Any, signature: bytes, data: bytes) -> bool:
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                signature,
                data,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
                hashes.SHA256(),
            )
        else:
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


def _index_public_keys(public_keys: Optional[Sequence[str]]) -> Dict[str, Any]:
    """Map fingerprint -> key, ignoring keys that fail to load"""
    index = {}
    for pem in public_keys or ():
        try:
            key = load_public_key(pem)
        except InvalidKeyError as e:
            logger.debug(f"Ignoring unusable verification key: {e}")
            continue
        index[fingerprint_of(key)] = key
    return index


async def _aclose(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class _ChunkReader:
    """Exact-size reads on top of an async chunk iterator"""

    def __init__(self, source: AsyncIterator[bytes]):
        self._source = source
        self._buffer = bytearray()
        self._exhausted = False

    async def _fill(self, size: int):
        while len(self._buffer) < size and not self._exhausted:
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                break
            self._buffer += chunk

    async def read_exact(self, size: int) -> bytes:
        await self._fill(size)
        if len(self._buffer) < size:
            raise FormatError("Unexpected end of encrypted data (file truncated?)")
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def at_eof(self) -> bool:
        await self._fill(1)
        return not self._buffer

    async def aclose(self):
        await _aclose(self._source)


class _PlaintextStream:
    """Decrypted records; closing it releases the input even if never iterated"""

    def __init__(self, records: AsyncIterator[bytes], reader: _ChunkReader):
        self._records = records
        self._reader = reader

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        return await self._records.__anext__()

    async def aclose(self):
        try:
            await self._records.aclose()
        finally:
            await self._reader.aclose()


def _encode_armor_lines(data: bytes) -> str:
    encoded = _b64encode(data)
    return "".join(
        encoded[i : i + ARMOR_LINE_LEN] + "\n" for i in range(0, len(encoded), ARMOR_LINE_LEN)
    )


async def armor_stream(source: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Wrap a binary stream in base64 armor lines"""
    # Whole lines only, so each emitted piece ends on a line break
    line_bytes = ARMOR_LINE_LEN // 4 * 3
    carry = b""
    try:
        yield ARMOR_BEGIN + "\n"
        async for chunk in source:
            carry += chunk
            usable = len(carry) - len(carry) % line_bytes
            if usable:
                yield _encode_armor_lines(carry[:usable])
                carry = carry[usable:]
        if carry:
            yield _encode_armor_lines(carry)
        yield ARMOR_END + "\n"
    finally:
        await _aclose(source)


async def dearmor_stream(source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Decode an armored stream back to the binary container.

    Text before the BEGIN line and after the END line is ignored, in any
    encoding, as are blank lines and ``Key: value`` armor headers. Only the
    body has to be ASCII. Body lines longer than ``MAX_ARMOR_LINE`` are
    rejected; longer lines outside the body are skipped without buffering.
    """
    state = "before"
    pending = b""
    carry = ""
    # Set while the rest of an overlong line outside the body is discarded
    skipping = False

    def feed(raw: bytes) -> bytes:
        nonlocal state, carry
        line = raw.strip()
        if state == "before":
            if line == ARMOR_BEGIN_BYTES:
                state = "body"
            return b""
        if state == "done":
            return b""
        if line == ARMOR_END_BYTES:
            state = "done"
            decoded = _b64decode(carry) if carry else b""
            carry = ""
            return decoded
        if not line or b":" in line:
            return b""
        try:
            carry += line.decode("ascii")
        except UnicodeDecodeError as e:
            raise FormatError("Armored message body contains non-ASCII data") from e
        usable = len(carry) - len(carry) % 4
        decoded = _b64decode(carry[:usable])
        carry = carry[usable:]
        return decoded

    try:
        async for chunk in source:
            if state == "done":
                continue
            lines = (pending + chunk).split(b"\n")
            pending = lines.pop()
            for raw in lines:
                if skipping:
                    skipping = False
                    continue
                decoded = feed(raw)
                if decoded:
                    yield decoded
            if len(pending) > MAX_ARMOR_LINE:
                if state == "body":
                    raise FormatError(f"Armor line longer than {MAX_ARMOR_LINE} bytes")
                pending = b""
                skipping = True
        if not skipping:
            decoded = feed(pending)
            if decoded:
                yield decoded
        if state == "before":
            raise FormatError("Armor header not found; is this an armored message?")
        if state != "done":
            raise FormatError("Armored message is missing its END line")
    finally:
        await _aclose(source)


def _encode_signature_block(signer: str, signature: bytes) -> str:
    return f"{SIGNATURE_BEGIN}\nSigner: {signer}\n{_encode_armor_lines(signature)}{SIGNATURE_END}\n"


def _decode_signature_block(block: str) -> Tuple[str, bytes]:
    lines = [line.strip() for line in block.strip().splitlines()]
    try:
        start = lines.index(SIGNATURE_BEGIN)
        end = lines.index(SIGNATURE_END, start)
    except ValueError as e:
        raise FormatError("Signature block not found") from e

    signer = None
    body = []
    for line in lines[start + 1 : end]:
        if line.startswith("Signer:"):
            signer = line.split(":", 1)[1].strip()
        elif line:
            body.append(line)
    if not signer:
        raise FormatError("Signature block does not name its signer")
    return signer, _b64decode("".join(body))


class CryptoEngine:
    """Key management, streaming encryption and signatures"""

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}
        chunk_size = self.config.get("chunk_size", DEFAULT_CHUNK_SIZE)
        if not isinstance(chunk_size, int) or not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
            logger.warning(f"Invalid chunk_size {chunk_size!r}, using {DEFAULT_CHUNK_SIZE}")
            chunk_size = DEFAULT_CHUNK_SIZE
        self.chunk_size = chunk_size

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def generate_key_pair(
        self, name: str, email: str, passphrase: str, algorithm: str = "rsa4096"
    ) -> KeyPair:
        """Generate a key pair whose private half is locked with ``passphrase``"""
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise EngineError(
                f"Unsupported algorithm: {algorithm} (choose from {', '.join(SUPPORTED_ALGORITHMS)})"
            )
        if not passphrase:
            raise PassphraseError("A passphrase is required to protect the private key")

        if algorithm == "ecc":
            private_key = ec.generate_private_key(ec.SECP256R1())
        else:
            key_size = 2048 if algorithm == "rsa2048" else 4096
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
        ).decode("ascii")
        public_key = private_key.public_key()
        fingerprint = fingerprint_of(public_key)

        logger.debug(f"Generated {algorithm} key {fingerprint}")
        return KeyPair(
            public_key=_public_pem(public_key),
            private_key=private_pem,
            fingerprint=fingerprint,
            key_id=fingerprint[-16:],
            user_id=f"{name} <{email}>",
            created=datetime.now(timezone.utc),
            algorithm=algorithm,
        )

    def read_public_key_info(self, public_pem: str) -> Dict[str, str]:
        key = load_public_key(public_pem)
        fingerprint = fingerprint_of(key)
        return {
            "fingerprint": fingerprint,
            "key_id": fingerprint[-16:],
            "algorithm": _key_algorithm(key),
            "public_key": _public_pem(key),
        }

    def unlock_private_key(self, private_pem: str, passphrase: str) -> UnlockedKey:
        try:
            private_key = serialization.load_pem_private_key(
                private_pem.encode("ascii"),
                password=passphrase.encode("utf-8") if passphrase else None,
            )
        except TypeError as e:
            raise PassphraseError("Passphrase required to unlock this private key") from e
        except (ValueError, UnsupportedAlgorithm) as e:
            raise PassphraseError("Incorrect passphrase or damaged private key") from e

        algorithm = _key_algorithm(private_key)
        return UnlockedKey(
            fingerprint=fingerprint_of(private_key.public_key()),
            algorithm=algorithm,
            private_key=private_key,
        )

    # ------------------------------------------------------------------
    # Streaming encryption
    # ------------------------------------------------------------------

    def _seal_record(
        self, aead: AESGCM, header: _Header, counter: int, flag: int, block: bytes
    ) -> bytes:
        if counter >= MAX_RECORDS:
            raise EngineError("Message too large for a single container")
        sealed = aead.encrypt(
            _make_nonce(header.nonce_prefix, counter),
            block,
            _record_aad(header.digest, counter, flag),
        )
        return struct.pack(">BI", flag, len(sealed)) + sealed

    async def _encrypt_records(
        self,
        source: AsyncIterator[bytes],
        header: _Header,
        session_key: bytes,
        signing_key: Optional[UnlockedKey],
    ) -> AsyncIterator[bytes]:
        aead = AESGCM(session_key)
        plaintext_digest = hashlib.sha256()
        buffer = bytearray()
        counter = 0
        try:
            yield header.raw
            async for chunk in source:
                buffer += chunk
                while len(buffer) >= header.chunk_size:
                    block = bytes(buffer[: header.chunk_size])
                    del buffer[: header.chunk_size]
                    plaintext_digest.update(block)
                    yield self._seal_record(aead, header, counter, RECORD_DATA, block)
                    counter += 1

            # The final record may be empty; it only marks the end of the message
            block = bytes(buffer)
            plaintext_digest.update(block)
            yield self._seal_record(aead, header, counter, RECORD_FINAL, block)

            if signing_key is not None:
                signature = _sign(signing_key.private_key, header.digest + plaintext_digest.digest())
                yield struct.pack(">H", len(signature)) + signature
        finally:
            await _aclose(source)

    async def encrypt(
        self,
        input_stream: AsyncIterator[bytes],
        recipients: Sequence[str],
        *,
        output_format: Union[OutputFormat, str] = OutputFormat.BINARY,
        signing_key: Optional[UnlockedKey] = None,
        filename: Optional[str] = None,
    ) -> Artifact:
        """Encrypt a byte stream for every public key in ``recipients``.

        Returns a lazy ``TEXT_STREAM`` artifact when armored output is asked
        for and a ``BYTE_STREAM`` otherwise. Nothing is read from
        ``input_stream`` until the artifact is consumed.
        """
        try:
            if not recipients:
                raise EngineError("At least one recipient public key is required")
            fmt = OutputFormat(output_format)
            public_keys = [load_public_key(pem) for pem in recipients]

            session_key = AESGCM.generate_key(bit_length=256)
            nonce_prefix = os.urandom(NONCE_PREFIX_LEN)
            header_fields = {
                "version": FORMAT_VERSION,
                "cipher": CIPHER_NAME,
                "chunk_size": self.chunk_size,
                "nonce_prefix": _b64encode(nonce_prefix),
                "recipients": [_wrap_session_key(key, session_key) for key in public_keys],
                "signer": signing_key.fingerprint if signing_key is not None else None,
                "filename": filename,
            }
            header_json = json.dumps(header_fields, sort_keys=True, separators=(",", ":")).encode(
                "utf-8"
            )
            raw = MAGIC + struct.pack(">BI", FORMAT_VERSION, len(header_json)) + header_json
            header = _Header(
                raw=raw,
                digest=hashlib.sha256(raw).digest(),
                chunk_size=self.chunk_size,
                nonce_prefix=nonce_prefix,
                recipients=header_fields["recipients"],
                signer=header_fields["signer"],
                filename=filename,
            )
        except BaseException:
            await _aclose(input_stream)
            raise

        records = self._encrypt_records(input_stream, header, session_key, signing_key)
        if fmt is OutputFormat.ARMORED:
            return Artifact.text_stream(armor_stream(records))
        return Artifact.byte_stream(records)

    # ------------------------------------------------------------------
    # Streaming decryption
    # ------------------------------------------------------------------

    async def _read_header(self, reader: _ChunkReader) -> _Header:
        magic = await reader.read_exact(len(MAGIC))
        if magic != MAGIC:
            raise FormatError("Not a cryptbatch encrypted message")
        prefix = await reader.read_exact(5)
        version, length = struct.unpack(">BI", prefix)
        if version != FORMAT_VERSION:
            raise FormatError(f"Unsupported message version: {version}")
        if length > MAX_HEADER_LEN:
            raise FormatError(f"Message header too large: {length} bytes")
        header_json = await reader.read_exact(length)

        try:
            fields = json.loads(header_json.decode("utf-8"))
            chunk_size = int(fields["chunk_size"])
            nonce_prefix = _b64decode(fields["nonce_prefix"])
            recipients = list(fields["recipients"])
            cipher = fields["cipher"]
        except (ValueError, KeyError, TypeError) as e:
            raise FormatError(f"Malformed message header: {e}") from e

        if cipher != CIPHER_NAME:
            raise FormatError(f"Unsupported cipher: {cipher}")
        if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
            raise FormatError(f"Invalid chunk size in header: {chunk_size}")
        if len(nonce_prefix) != NONCE_PREFIX_LEN:
            raise FormatError("Invalid nonce prefix in header")

        raw = MAGIC + prefix + header_json
        return _Header(
            raw=raw,
            digest=hashlib.sha256(raw).digest(),
            chunk_size=chunk_size,
            nonce_prefix=nonce_prefix,
            recipients=recipients,
            signer=fields.get("signer"),
            filename=fields.get("filename"),
        )

    def _session_key_for(self, header: _Header, key: UnlockedKey) -> bytes:
        for entry in header.recipients:
            if isinstance(entry, dict) and entry.get("fingerprint") == key.fingerprint:
                return _unwrap_session_key(key.private_key, entry)
        raise DecryptionError(
            f"Message is not encrypted for key {format_fingerprint(key.fingerprint)}"
        )

    def _check_signature(
        self,
        header: _Header,
        signature: Optional[bytes],
        plaintext_digest: bytes,
        verification_keys: Optional[Sequence[str]],
    ) -> Optional[bool]:
        if verification_keys is None or not header.signer:
            return None
        public_key = _index_public_keys(verification_keys).get(header.signer)
        if public_key is None:
            logger.debug(f"No verification key for signer {header.signer}")
            return False
        return _verify(public_key, signature, header.digest + plaintext_digest)

    async def _decrypt_records(
        self,
        reader: _ChunkReader,
        header: _Header,
        session_key: bytes,
        verification_keys: Optional[Sequence[str]],
        on_verified,
    ) -> AsyncIterator[bytes]:
        aead = AESGCM(session_key)
        plaintext_digest = hashlib.sha256()
        counter = 0
        try:
            while True:
                flag, length = struct.unpack(">BI", await reader.read_exact(5))
                if flag not in (RECORD_DATA, RECORD_FINAL):
                    raise FormatError(f"Invalid record flag {flag} at record {counter}")
                if not TAG_LEN <= length <= header.chunk_size + TAG_LEN:
                    raise FormatError(f"Invalid record length {length} at record {counter}")
                sealed = await reader.read_exact(length)
                try:
                    block = aead.decrypt(
                        _make_nonce(header.nonce_prefix, counter),
                        sealed,
                        _record_aad(header.digest, counter, flag),
                    )
                except InvalidTag as e:
                    raise DecryptionError(
                        f"Integrity check failed at record {counter}; data is corrupted or was modified"
                    ) from e
                plaintext_digest.update(block)
                if block:
                    yield block
                counter += 1
                if flag == RECORD_FINAL:
                    break

            signature = None
            if header.signer:
                (signature_len,) = struct.unpack(">H", await reader.read_exact(2))
                signature = await reader.read_exact(signature_len)
            if not await reader.at_eof():
                raise FormatError("Unexpected data after end of message")

            on_verified(
                self._check_signature(
                    header, signature, plaintext_digest.digest(), verification_keys
                )
            )
        finally:
            await reader.aclose()

    async def decrypt(
        self,
        input_stream: AsyncIterator[bytes],
        key: UnlockedKey,
        *,
        input_format: Union[OutputFormat, str] = OutputFormat.BINARY,
        verification_keys: Optional[Sequence[str]] = None,
    ) -> TransformResult:
        """Decrypt a stream with an unlocked private key.

        The header is read and the session key unwrapped before this returns,
        so a foreign or malformed message fails here. The plaintext arrives as
        a ``BYTE_STREAM``; ``verified`` on the returned result is set once
        that stream has been fully consumed (None when the message is unsigned
        or no ``verification_keys`` were given).
        """
        fmt = OutputFormat(input_format)
        source = dearmor_stream(input_stream) if fmt is OutputFormat.ARMORED else input_stream
        reader = _ChunkReader(source)
        try:
            header = await self._read_header(reader)
            session_key = self._session_key_for(header, key)
        except BaseException:
            await reader.aclose()
            raise

        def record_verified(verified: Optional[bool]):
            result.verified = verified

        records = self._decrypt_records(
            reader, header, session_key, verification_keys, record_verified
        )
        result = TransformResult(
            artifact=Artifact.byte_stream(_PlaintextStream(records, reader)),
            filename=header.filename,
        )
        return result

    # ------------------------------------------------------------------
    # Messages and signatures
    # ------------------------------------------------------------------

    async def encrypt_message(
        self,
        text: str,
        recipients: Sequence[str],
        signing_key: Optional[UnlockedKey] = None,
    ) -> str:
        artifact = await self.encrypt(
            _single_chunk(text.encode("utf-8")),
            recipients,
            output_format=OutputFormat.ARMORED,
            signing_key=signing_key,
        )
        return "".join([piece async for piece in artifact.payload])

    async def decrypt_message(
        self,
        armored: str,
        key: UnlockedKey,
        verification_keys: Optional[Sequence[str]] = None,
    ) -> Tuple[str, Optional[bool]]:
        result = await self.decrypt(
            _single_chunk(armored.encode("utf-8")),
            key,
            input_format=OutputFormat.ARMORED,
            verification_keys=verification_keys,
        )
        data = b"".join([chunk async for chunk in result.artifact.payload])
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted message is not UTF-8 text") from e
        return text, result.verified

    def sign_message(self, text: str, key: UnlockedKey, detached: bool = False) -> str:
        """Clearsign ``text``, or return only a detached signature block"""
        signature = _sign(key.private_key, text.encode("utf-8"))
        block = _encode_signature_block(key.fingerprint, signature)
        if detached:
            return block
        return f"{SIGNED_BEGIN}\n{text}\n{block}"

    def extract_signed_text(self, signed: str) -> Tuple[str, str]:
        """Split a clearsigned message into its text and signature block"""
        head = SIGNED_BEGIN + "\n"
        start = signed.find(head)
        end = signed.rfind("\n" + SIGNATURE_BEGIN)
        if start < 0 or end < start + len(head) - 1:
            raise FormatError("Not a clearsigned cryptbatch message")
        return signed[start + len(head) : end], signed[end + 1 :]

    def verify_message(
        self,
        message: str,
        public_keys: Sequence[str],
        signature: Optional[str] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Verify a clearsigned message, or ``message`` against a detached block.

        Returns ``(verified, signer fingerprint)``; the fingerprint is only
        reported when verification succeeded.
        """
        if signature is None:
            text, block = self.extract_signed_text(message)
        else:
            text, block = message, signature
        signer, raw_signature = _decode_signature_block(block)

        public_key = _index_public_keys(public_keys).get(signer)
        if public_key is None:
            logger.debug(f"Signer {signer} is not among the known keys")
            return False, None
        if not _verify(public_key, raw_signature, text.encode("utf-8")):
            return False, None
        return True, signer
