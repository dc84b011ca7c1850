#!/usr/bin/env python3
"""
pupx - PS4 firmware update container (PUP) decoder and segment extractor

Decodes the PUP header and its encrypted segment directory, then rebuilds
blocked segments from their information segment (digests + extents),
decrypting and inflating each block as flagged.

NOTE: Signature and digest verification are NOT performed. Blocks carrying
the "signed" flag are accepted as-is (see SIGNATURES_VERIFIED).

NOTE: This requires 'cryptography'.

Copyright (c) 2025 The pupx authors
All rights reserved.
Licensed under GPLv3.
"""

import os, json, struct, zlib, argparse, sys
from typing import Optional, Dict, List, Tuple, Callable, BinaryIO, NamedTuple, Any

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# === PUP format constants ===
PUP_MAGIC = 0x1D3D154F
PUP_VERSION = 0
PUP_MODE = 1
PUP_ENDIAN_LITTLE = 1
PUP_ATTR = 0x12
PUP_FLAG_JIG = 0x1        # Only flag bit this decoder knows; it is rejected

AES_BLOCK_SIZE = 16
DIGEST_SIZE = 32

# Header: magic, version, mode, endian, attr, flags, hdr_size, meta_size, reserved
HEADER_STRUCT = struct.Struct('<IBBBBHHHH')
# Extended header: package_size, segment_count, ex_flags, reserved
HEADER_EX_STRUCT = struct.Struct('<QHHI')
# Segment entry: flags, offset, file_size, memory_size
SEGMENT_ENTRY_STRUCT = struct.Struct('<QQQQ')
# Segment meta: data_key, data_iv
SEGMENT_META_STRUCT = struct.Struct('<16s16s')
# Extent: offset (relative to segment base), size
EXTENT_STRUCT = struct.Struct('<II')

# --- Segment entry flag bits ---
SEGMENT_FLAG_ENCRYPTED = 1 << 1
SEGMENT_FLAG_SIGNED = 1 << 2
SEGMENT_FLAG_COMPRESSED = 1 << 3
SEGMENT_FLAG_INFO = 1 << 10
SEGMENT_FLAG_BLOCKED = 1 << 11
SEGMENT_FLAG_DIGESTS = 1 << 16
SEGMENT_FLAG_EXTENTS = 1 << 17
SEGMENT_BLOCK_EXP_SHIFT = 12
SEGMENT_ID_SHIFT = 20

# --- Key names resolved through the KeyStore ---
KEY_NAME_HEADER = 'pup.hdr'
KEY_NAME_ROOT = 'pup.root_key'

# No signature or digest is ever checked by this decoder.
SIGNATURES_VERIFIED = False

# Known segment ids of PS4 system updates
SEGMENT_NAMES = {
    0x1: "emc_ipl.slb",
    0x2: "eap_kbl.slb",
    0x3: "torus2_fw.slb",
    0x4: "sam_ipl.slb",
    0x5: "coreos.slb",
    0x6: "system_exfat.img",
    0x7: "eap_kernel.slb",
    0x8: "eap_vsh_fat16.img",
    0x9: "preinst_fat32.img",
    0xB: "preinst2_fat32.img",
    0xC: "system_ex_exfat.img",
    0xD: "emc_ipl.slb",
    0xE: "eap_kbl.slb",
    0x20: "emc_ipl.slb",
    0x21: "eap_kbl.slb",
    0x22: "torus2_fw.slb",
    0x23: "sam_ipl.slb",
    0x30: "torus2_fw.bin",
    0x101: "eula.xml",
    0x200: "orbis_swu.elf",
    0x202: "orbis_swu.self",
    0xD01: "bd_firm.slb",
    0xD02: "sata_bridge_fw.slb",
    0xD09: "cp_fw_kernel.slb",
}


# --- Errors ---

class PupError(Exception):
    """Base class for every failure raised while decoding a PUP container."""

class MalformedHeaderError(PupError, ValueError):
    """Header constants mismatch or directory sizes inconsistent with segment_count."""

class MalformedSegmentError(PupError, ValueError):
    """Information segment too short for the digests/extents it declares."""

class UnsupportedFeatureError(PupError):
    """The container uses a feature this decoder does not handle (JIG, compressed info...)."""

class SegmentNotFoundError(PupError, LookupError):
    pass

class PupNotImplementedError(PupError, NotImplementedError):
    pass

class PupIOError(PupError, IOError):
    pass

class DecompressionError(PupError, RuntimeError):
    pass


# --- Records ---

class PupHeader(NamedTuple):
    magic: int
    version: int
    mode: int
    endian: int
    attr: int
    flags: int
    hdr_size: int
    meta_size: int


class PupHeaderEx(NamedTuple):
    package_size: int
    segment_count: int
    ex_flags: int


class SegmentEntry(NamedTuple):
    """One directory entry with its flag bitfield decoded into plain fields."""
    id: int
    flags: int
    offset: int
    file_size: int
    memory_size: int
    is_blocked: bool
    is_info: bool
    is_encrypted: bool
    is_compressed: bool
    is_signed: bool
    has_digests: bool
    has_extents: bool
    block_size: int

    @classmethod
    def from_raw(cls, flags: int, offset: int, file_size: int, memory_size: int) -> 'SegmentEntry':
        block_exp = (flags >> SEGMENT_BLOCK_EXP_SHIFT) & 0xF
        return cls(
            id=flags >> SEGMENT_ID_SHIFT,
            flags=flags,
            offset=offset,
            file_size=file_size,
            memory_size=memory_size,
            is_blocked=bool(flags & SEGMENT_FLAG_BLOCKED),
            is_info=bool(flags & SEGMENT_FLAG_INFO),
            is_encrypted=bool(flags & SEGMENT_FLAG_ENCRYPTED),
            is_compressed=bool(flags & SEGMENT_FLAG_COMPRESSED),
            is_signed=bool(flags & SEGMENT_FLAG_SIGNED),
            has_digests=bool(flags & SEGMENT_FLAG_DIGESTS),
            has_extents=bool(flags & SEGMENT_FLAG_EXTENTS),
            block_size=1 << (12 + block_exp),
        )

    @property
    def block_count(self) -> int:
        return (self.file_size + self.block_size - 1) // self.block_size


class SegmentMeta(NamedTuple):
    data_key: bytes
    data_iv: bytes


class Extent(NamedTuple):
    offset: int
    size: int


class PupKey(NamedTuple):
    key: bytes
    iv: bytes


# --- Key service ---

class KeyStore:
    """Resolves logical key names (e.g. 'pup.hdr') to AES-128 key material."""

    def __init__(self, keys: Optional[Dict[str, PupKey]] = None):
        self._keys: Dict[str, PupKey] = {}
        for name, value in (keys or {}).items():
            self.add(name, value.key, value.iv)

    def add(self, name: str, key: bytes, iv: bytes):
        if len(key) != 16 or len(iv) != 16:
            raise ValueError(f"Key '{name}' must have a 16-byte key and a 16-byte IV.")
        self._keys[name] = PupKey(bytes(key), bytes(iv))

    def get(self, name: str) -> PupKey:
        try:
            return self._keys[name]
        except KeyError:
            raise KeyError(f"Key '{name}' is not available in the key store.")

    def __contains__(self, name: str) -> bool:
        return name in self._keys

    @classmethod
    def from_json(cls, filepath: str) -> 'KeyStore':
        """Loads keys from a JSON file: {"pup.hdr": {"key": "<hex>", "iv": "<hex>"}, ...}"""
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Failed to load key file {filepath}: {e}")

        store = cls()
        for name, entry in raw.items():
            try:
                store.add(name, bytes.fromhex(entry['key']), bytes.fromhex(entry['iv']))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Invalid entry '{name}' in key file {filepath}: {e}")
        return store


# --- Cipher helpers ---

def aes_cbc_decrypt(data: bytes, key: bytes, iv: bytes) -> bytes:
    """Plain AES-128-CBC decryption of the block-aligned prefix of data.

    A trailing partial block is returned exactly as it was given.
    """
    size_aligned = len(data) & ~0xF
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    plain = decryptor.update(bytes(data[:size_aligned])) + decryptor.finalize()
    return plain + bytes(data[size_aligned:])


def pup_decrypt(buffer: bytearray, key: bytes, iv: bytes):
    """Decrypts buffer in place with AES-128-CBC, handling unaligned lengths.

    The trailing len % 16 bytes are XORed with the CBC encryption (zero IV)
    of the last aligned ciphertext block. This is PUP's own tail scheme,
    not standard ciphertext stealing. With fewer than 16 aligned bytes the
    tail is left untouched.
    """
    size_aligned = len(buffer) & ~0xF
    overflow = len(buffer) & 0xF

    prev_block = None
    if overflow and size_aligned >= AES_BLOCK_SIZE:
        prev_block = bytes(buffer[size_aligned - AES_BLOCK_SIZE:size_aligned])

    if size_aligned:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        buffer[:size_aligned] = decryptor.update(bytes(buffer[:size_aligned])) + decryptor.finalize()

    if prev_block is not None:
        encryptor = Cipher(algorithms.AES(key), modes.CBC(bytes(AES_BLOCK_SIZE))).encryptor()
        next_block = encryptor.update(prev_block) + encryptor.finalize()
        for i in range(overflow):
            buffer[size_aligned + i] ^= next_block[i]


def inflate_block(data: bytes, size: int) -> bytes:
    """Inflates a zlib stream into exactly `size` bytes."""
    try:
        decompressor = zlib.decompressobj()
        raw_data = decompressor.decompress(data, size)
    except zlib.error as e:
        raise DecompressionError(f"Failed to inflate block: {e}")
    if len(raw_data) != size:
        raise DecompressionError(f"Inflated block is {len(raw_data)} bytes, expected {size}.")
    return raw_data


# --- Stream helpers ---

def read_at(stream: BinaryIO, offset: int, size: int) -> bytes:
    """Reads exactly `size` bytes at `offset`; short reads are fatal."""
    try:
        stream.seek(offset, os.SEEK_SET)
        data = stream.read(size)
    except OSError as e:
        raise PupIOError(f"Could not read {size} bytes at offset 0x{offset:X}: {e}")
    if data is None or len(data) != size:
        got = 0 if data is None else len(data)
        raise PupIOError(f"Short read at offset 0x{offset:X}: expected {size} bytes, got {got}.")
    return data


# --- Header and directory decoding ---

def decode_header(stream: BinaryIO) -> PupHeader:
    """Reads and validates the fixed PUP header at offset 0."""
    header = PupHeader(*HEADER_STRUCT.unpack(read_at(stream, 0, HEADER_STRUCT.size))[:8])

    if header.magic != PUP_MAGIC:
        raise MalformedHeaderError(f"Invalid PUP magic: 0x{header.magic:08X}")
    if header.version != PUP_VERSION:
        raise MalformedHeaderError(f"Unsupported PUP version: {header.version}")
    if header.mode != PUP_MODE:
        raise MalformedHeaderError(f"Unsupported PUP mode: {header.mode}")
    if header.endian != PUP_ENDIAN_LITTLE:
        raise MalformedHeaderError(f"Unsupported PUP endianness: {header.endian}")
    if header.attr != PUP_ATTR:
        raise MalformedHeaderError(f"Unexpected PUP attribute: 0x{header.attr:02X}")

    if header.flags & PUP_FLAG_JIG:
        raise UnsupportedFeatureError("Unsupported JIG flag")

    return header


def decode_directory(
    stream: BinaryIO, header: PupHeader, keys: KeyStore
) -> Tuple[PupHeaderEx, List[SegmentEntry], List[SegmentMeta]]:
    """Decrypts the extended header, segment entries and segment metas."""
    hdr_region_size = header.hdr_size - HEADER_STRUCT.size
    if hdr_region_size < HEADER_EX_STRUCT.size or hdr_region_size % AES_BLOCK_SIZE:
        raise MalformedHeaderError(f"Invalid PUP header size: {header.hdr_size}")
    if header.meta_size % AES_BLOCK_SIZE:
        raise MalformedHeaderError(f"Invalid PUP meta size: {header.meta_size}")

    hdr_key = keys.get(KEY_NAME_HEADER)
    buffer = aes_cbc_decrypt(read_at(stream, HEADER_STRUCT.size, hdr_region_size), hdr_key.key, hdr_key.iv)
    header_ex = PupHeaderEx(*HEADER_EX_STRUCT.unpack_from(buffer, 0)[:3])

    count = header_ex.segment_count
    if HEADER_EX_STRUCT.size + count * SEGMENT_ENTRY_STRUCT.size > len(buffer):
        raise MalformedHeaderError(f"Segment count {count} exceeds the PUP header region.")
    entries = [
        SegmentEntry.from_raw(*SEGMENT_ENTRY_STRUCT.unpack_from(buffer, HEADER_EX_STRUCT.size + i * SEGMENT_ENTRY_STRUCT.size))
        for i in range(count)
    ]

    if count * SEGMENT_META_STRUCT.size > header.meta_size:
        raise MalformedHeaderError(f"Segment count {count} exceeds the PUP meta region.")
    root_key = keys.get(KEY_NAME_ROOT)
    buffer = aes_cbc_decrypt(read_at(stream, header.hdr_size, header.meta_size), root_key.key, root_key.iv)
    metas = [
        SegmentMeta(*SEGMENT_META_STRUCT.unpack_from(buffer, i * SEGMENT_META_STRUCT.size))
        for i in range(count)
    ]

    return header_ex, entries, metas


# --- Parser ---

class PupParser:
    """Decoded PUP directory plus on-demand segment extraction.

    The directory is decoded once in the constructor and never changes. The
    stream cursor is shared by every call, so one parser must not be used by
    several threads at once.
    """

    signatures_verified = SIGNATURES_VERIFIED

    def __init__(self, stream: BinaryIO, keys: KeyStore, verify: bool = False):
        self.stream = stream
        self.header = decode_header(stream)
        self.header_ex, entries, metas = decode_directory(stream, self.header, keys)
        self.entries: Tuple[SegmentEntry, ...] = tuple(entries)
        self.metas: Tuple[SegmentMeta, ...] = tuple(metas)

        if verify:
            raise PupNotImplementedError("PUP integrity verification is not implemented.")

    def find(self, predicate: Callable[[SegmentEntry, SegmentMeta], bool]) -> int:
        """Returns the index of the first directory entry matching predicate."""
        for i, (entry, meta) in enumerate(zip(self.entries, self.metas)):
            if predicate(entry, meta):
                return i
        raise SegmentNotFoundError("PUP segment not found")

    def find_payload(self, segment_id: int) -> int:
        try:
            return self.find(lambda entry, meta: entry.id == segment_id and not entry.is_info)
        except SegmentNotFoundError:
            raise SegmentNotFoundError(f"PUP segment 0x{segment_id:X} not found")

    def find_info(self, segment_id: int) -> int:
        try:
            return self.find(lambda entry, meta: entry.id == segment_id and entry.is_info)
        except SegmentNotFoundError:
            raise SegmentNotFoundError(f"Information segment for PUP segment 0x{segment_id:X} not found")

    def get(self, segment_id: int) -> bytes:
        """Returns the decoded contents of the payload segment with this id."""
        index = self.find_payload(segment_id)
        if self.entries[index].is_blocked:
            return self.get_blocked(index)
        return self.get_nonblocked(index)

    def get_nonblocked(self, index: int) -> bytes:
        raise PupNotImplementedError(f"Extraction of non-blocked segment #{index} is not implemented.")

    def read_info(self, index: int) -> Tuple[List[bytes], List[Extent]]:
        """Reads the information segment of payload #index into (digests, extents)."""
        entry = self.entries[index]
        block_count = entry.block_count

        info_index = self.find_info(entry.id)
        info_entry = self.entries[info_index]
        info_meta = self.metas[info_index]

        info_buffer = bytearray(read_at(self.stream, info_entry.offset, info_entry.file_size))
        if info_entry.is_encrypted:
            pup_decrypt(info_buffer, info_meta.data_key, info_meta.data_iv)
        if info_entry.is_compressed:
            raise UnsupportedFeatureError(f"Compressed information segment #{info_index} is not supported.")
        # Signed information segments are accepted unchecked.

        needed = 0
        if info_entry.has_digests:
            needed += block_count * DIGEST_SIZE
        if info_entry.has_extents:
            needed += block_count * EXTENT_STRUCT.size
        if needed > len(info_buffer):
            raise MalformedSegmentError(
                f"Information segment #{info_index} holds {len(info_buffer)} bytes, {needed} required for {block_count} blocks."
            )

        pos = 0
        digests: List[bytes] = []
        extents: List[Extent] = []
        if info_entry.has_digests:
            for _ in range(block_count):
                digests.append(bytes(info_buffer[pos:pos + DIGEST_SIZE]))
                pos += DIGEST_SIZE
        if info_entry.has_extents:
            for _ in range(block_count):
                extents.append(Extent(*EXTENT_STRUCT.unpack_from(info_buffer, pos)))
                pos += EXTENT_STRUCT.size

        return digests, extents

    def get_blocked(self, index: int) -> bytes:
        """Rebuilds blocked payload segment #index block by block."""
        entry = self.entries[index]
        meta = self.metas[index]
        block_size = entry.block_size

        _digests, extents = self.read_info(index)

        left_size = entry.file_size
        segment = bytearray()
        for extent in extents:
            block = read_at(self.stream, entry.offset + extent.offset, extent.size)

            # Equals extent.size only for 16-aligned extents.
            cur_zsize = (extent.size & ~0xF) - (extent.size & 0xF)
            cur_size = min(block_size, left_size)
            left_size -= cur_size
            # Signed blocks are accepted unchecked.
            if entry.is_encrypted:
                block = aes_cbc_decrypt(block, meta.data_key, meta.data_iv)

            dest = len(segment)
            segment.extend(bytes(cur_size))
            if entry.is_compressed:
                if cur_zsize < 0:
                    raise DecompressionError(f"Extent of {extent.size} bytes yields a negative compressed size.")
                segment[dest:dest + cur_size] = inflate_block(block[:cur_zsize], cur_size)
            else:
                # The whole block is copied, then clipped to the grown segment size.
                segment[dest:dest + len(block)] = block
                del segment[dest + cur_size:]

        return bytes(segment)

    def describe(self) -> Dict[str, Any]:
        """JSON-serialisable summary of the header and directory."""
        segments = []
        for i, entry in enumerate(self.entries):
            segments.append({
                'index': i,
                'id': entry.id,
                'name': segment_file_name(entry.id),
                'flags': entry.flags,
                'offset': entry.offset,
                'file_size': entry.file_size,
                'memory_size': entry.memory_size,
                'info': entry.is_info,
                'blocked': entry.is_blocked,
                'encrypted': entry.is_encrypted,
                'compressed': entry.is_compressed,
                'signed': entry.is_signed,
                'digests': entry.has_digests,
                'extents': entry.has_extents,
                'block_size': entry.block_size if entry.is_blocked else None,
                'block_count': entry.block_count if entry.is_blocked else None,
            })
        return {
            'header': self.header._asdict(),
            'header_ex': self.header_ex._asdict(),
            'signatures_verified': self.signatures_verified,
            'segments': segments,
        }


def segment_file_name(segment_id: int) -> str:
    return SEGMENT_NAMES.get(segment_id, f"unknown_{segment_id:04X}.bin")


# --- CLI and Main Execution ---

def print_info(parser: PupParser):
    header = parser.header
    print(f"PUP magic: 0x{header.magic:08X}  version: {header.version}  mode: {header.mode}  flags: 0x{header.flags:X}")
    print(f"Header size: {header.hdr_size}  Meta size: {header.meta_size}  Package size: {parser.header_ex.package_size}")
    print(f"Segments: {parser.header_ex.segment_count}  (signatures verified: {parser.signatures_verified})")
    print("-" * 100)
    print(f"{'#':>3}  {'id':>6}  {'kind':<7} {'flags':<18} {'offset':>12} {'file_size':>12}  {'blocks':<14} name")
    for i, entry in enumerate(parser.entries):
        kind = "info" if entry.is_info else "payload"
        attrs = "".join([
            "E" if entry.is_encrypted else "-",
            "C" if entry.is_compressed else "-",
            "S" if entry.is_signed else "-",
            "D" if entry.has_digests else "-",
            "X" if entry.has_extents else "-",
        ])
        blocks = f"{entry.block_count}x{entry.block_size}" if entry.is_blocked else "-"
        print(f"{i:>3}  0x{entry.id:04X}  {kind:<7} {attrs:<18} {entry.offset:>#12x} {entry.file_size:>12}  {blocks:<14} {segment_file_name(entry.id)}")
    print("-" * 100)


def unpack_pup(parser: PupParser, output_dir: str) -> int:
    """Writes every blocked payload segment into output_dir. Returns the count written."""
    os.makedirs(output_dir, exist_ok=True)
    written = 0
    seen_ids = set()
    for index, entry in enumerate(parser.entries):
        if entry.is_info:
            continue
        if not entry.is_blocked:
            print(f"Skipping non-blocked segment 0x{entry.id:X}: extraction not implemented.", file=sys.stderr)
            continue
        try:
            data = parser.get_blocked(index)
        except PupError as e:
            print(f"Error extracting segment 0x{entry.id:X}: {e}. Skipping segment.", file=sys.stderr)
            continue

        # Repeated ids keep their directory index in the file name.
        file_name = f"{entry.id:04X}_{segment_file_name(entry.id)}"
        if entry.id in seen_ids:
            file_name = f"{entry.id:04X}_{index}_{segment_file_name(entry.id)}"
        seen_ids.add(entry.id)
        output_path = os.path.join(output_dir, file_name)
        with open(output_path, 'wb') as fout:
            fout.write(data)
        print(f"  Extracted 0x{entry.id:04X} -> {output_path} ({len(data)} bytes)")
        written += 1
    return written


def main():
    parser = argparse.ArgumentParser(
        description="PS4 PUP decoder: lists the segment directory and extracts blocked segments."
    )
    parser.add_argument("cmd", choices=["info", "extract", "unpack"], help="Command: 'info', 'extract', or 'unpack'.")
    parser.add_argument("--input-file", required=True, help="Input PUP file path.")
    parser.add_argument("--keys", required=True, help="JSON key file providing 'pup.hdr' and 'pup.root_key'.")
    parser.add_argument("--verify", action="store_true", help="Request integrity verification (not implemented).")
    parser.add_argument("--json", action="store_true", help="'info': print the directory as JSON.")

    extract_group = parser.add_argument_group("Extract Arguments (for 'extract' command)")
    extract_group.add_argument("--id", type=lambda s: int(s, 0), help="Segment id (e.g. 0x6).")
    extract_group.add_argument("--output", help="Output file path for the extracted segment.")

    unpack_group = parser.add_argument_group("Unpack Arguments (for 'unpack' command)")
    unpack_group.add_argument("--output-folder", help="Output folder path to extract segments into.")

    args = parser.parse_args()

    try:
        keys = KeyStore.from_json(args.keys)
        with open(args.input_file, 'rb') as fin:
            pup = PupParser(fin, keys, verify=args.verify)

            if args.cmd == "info":
                if args.json:
                    print(json.dumps(pup.describe(), indent=2))
                else:
                    print_info(pup)

            elif args.cmd == "extract":
                if args.id is None or not args.output:
                    parser.error("The 'extract' command requires --id and --output.")
                data = pup.get(args.id)
                with open(args.output, 'wb') as fout:
                    fout.write(data)
                print(f"[pupx extract] Wrote {len(data)} bytes of segment 0x{args.id:X} to {args.output}")

            elif args.cmd == "unpack":
                if not args.output_folder:
                    parser.error("The 'unpack' command requires --output-folder.")
                print(f"Starting unpack of '{args.input_file}' to '{args.output_folder}'...")
                written = unpack_pup(pup, args.output_folder)
                print(f"\nSuccessfully extracted {written} segment(s) to: {args.output_folder}")

    except Exception as e:
        print(f"\nFATAL ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
