# SPDX-FileCopyrightText: 2014-2025 Fredrik Ahlberg, Angus Gratton,
# Espressif Systems (Shanghai) CO LTD, other contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import copy
import hashlib
import io
import struct

from .logger import log
from .profile import (
    DEFAULT_FLASH_FREQ,
    DEFAULT_FLASH_MODE,
    DEFAULT_FLASH_SIZE,
    EM_RISCV,
    EM_XTENSA,
    ChipProfile,
)
from .targets import (
    ESP32C3Profile,
    ESP32Profile,
    ESP32S2Profile,
    ESP32S3Profile,
    ESP8266Profile,
    resolve_chip,
)
from .util import (
    FatalError,
    ImageSource,
    InvalidExecutable,
    byte,
    flash_size_bytes,
    get_bytes,
    pad_to,
)

# Offset of the ELF SHA-256 inside the esp_app_desc_t of an ESP-IDF application
APP_DESC_ELF_SHA256_OFFSET = 0xB0


def align_file_position(f, size):
    """Align the position in the file to the next block of specified size"""
    align = (size - 1) - (f.tell() % size)
    f.seek(align, 1)


def LoadFirmwareImage(chip, image_file):
    """
    Load a firmware image (bootloader or application) for the given chip,
    from bytes or an opened binary file.

    Returns a BaseFirmwareImage subclass instance, raises FatalError if the data
    doesn't parse as an image for this chip.
    """
    profile = resolve_chip(chip) if isinstance(chip, str) else chip
    if isinstance(image_file, (bytes, bytearray)):
        image_file = io.BytesIO(image_file)
    try:
        return profile.BOOTLOADER_IMAGE(image_file)
    except struct.error as e:
        raise FatalError(f"Failed to read a {profile.CHIP_NAME} image: {e}")


class ImageSegment(object):
    """Wrapper class for a segment in an ESP image
    (very similar to a section in an ELFImage also)"""

    def __init__(self, addr, data, file_offs=None):
        self.addr = addr
        self.data = data
        self.file_offs = file_offs
        self.name = ""
        self.include_in_checksum = True
        if self.addr != 0:
            self.pad_to_alignment(
                4
            )  # pad all "real" ImageSegments 4 byte aligned length

    def split_image(self, split_len):
        """Return a new ImageSegment which splits "split_len" bytes
        from the beginning of the data. Remaining bytes are kept in
        this segment object (and the start address is adjusted to match.)"""
        result = copy.copy(self)
        result.data = self.data[:split_len]
        self.data = self.data[split_len:]
        self.addr += split_len
        self.file_offs = None
        result.file_offs = None
        return result

    def __repr__(self):
        r = "len 0x%05x load 0x%08x" % (len(self.data), self.addr)
        if self.file_offs is not None:
            r += " file_offs 0x%08x" % (self.file_offs)
        return r

    def get_memory_type(self, image):
        """
        Return a list describing the memory type(s) that is covered by this
        segment's start address.
        """
        return [
            map_range[2]
            for map_range in image.ROM_LOADER.MEMORY_MAP
            if map_range[0] <= self.addr < map_range[1]
        ]

    def pad_to_alignment(self, alignment):
        self.data = pad_to(self.data, alignment, b"\x00")


class ELFSection(ImageSegment):
    """Wrapper class for a section in an ELF image, has a section
    name as well as the common properties of an ImageSegment."""

    def __init__(self, name, addr, data):
        super(ELFSection, self).__init__(addr, data)
        self.name = name

    def __repr__(self):
        return "%s %s" % (self.name, super(ELFSection, self).__repr__())


class BaseFirmwareImage(object):
    SEG_HEADER_LEN = 8
    SHA256_DIGEST_LEN = 32
    MAX_SEGMENTS = 16

    ROM_LOADER: type[ChipProfile] = ChipProfile

    """ Base class with common firmware image functions """

    def __init__(self):
        self.segments = []
        self.entrypoint = 0
        self.elf_sha256 = None
        self.elf_sha256_offset = 0

    def load_common_header(self, load_file, expected_magic):
        (
            magic,
            segments,
            self.flash_mode,
            self.flash_size_freq,
            self.entrypoint,
        ) = struct.unpack("<BBBBI", load_file.read(8))

        if magic != expected_magic:
            raise FatalError("Invalid firmware image magic=0x%x" % (magic))
        return segments

    def verify(self):
        if len(self.segments) > self.MAX_SEGMENTS:
            raise InvalidExecutable(
                "Invalid segment count %d (max %d). "
                "Usually this indicates a linker script problem."
                % (len(self.segments), self.MAX_SEGMENTS)
            )

    def load_segment(self, f):
        """Load the next segment from the image file"""
        file_offs = f.tell()
        (offset, size) = struct.unpack("<II", f.read(8))
        segment_data = f.read(size)
        if len(segment_data) < size:
            raise FatalError(
                "End of file reading segment 0x%x, length %d (actual length %d)"
                % (offset, size, len(segment_data))
            )
        segment = ImageSegment(offset, segment_data, file_offs)
        self.segments.append(segment)
        return segment

    def maybe_patch_segment_data(self, f, segment_data):
        """
        If SHA256 digest of the ELF file needs to be inserted into this segment, do so.
        Returns segment data.
        """
        segment_len = len(segment_data)
        file_pos = f.tell()  # file_pos is position in the .bin file
        if (
            self.elf_sha256_offset >= file_pos
            and self.elf_sha256_offset < file_pos + segment_len
        ):
            # SHA256 digest needs to be patched into this binary segment,
            # calculate offset of the digest inside the binary segment.
            patch_offset = self.elf_sha256_offset - file_pos
            if (
                patch_offset < self.SEG_HEADER_LEN
                or patch_offset + self.SHA256_DIGEST_LEN > segment_len
            ):
                raise InvalidExecutable(
                    "Cannot place SHA256 digest on segment boundary"
                    "(elf_sha256_offset=%d, file_pos=%d, segment_size=%d)"
                    % (self.elf_sha256_offset, file_pos, segment_len)
                )
            # offset relative to the data part
            patch_offset -= self.SEG_HEADER_LEN
            if (
                segment_data[patch_offset : patch_offset + self.SHA256_DIGEST_LEN]
                != b"\x00" * self.SHA256_DIGEST_LEN
            ):
                raise InvalidExecutable(
                    "Contents of segment at SHA256 digest offset 0x%x are not all zero."
                    " Refusing to overwrite." % self.elf_sha256_offset
                )
            assert len(self.elf_sha256) == self.SHA256_DIGEST_LEN
            segment_data = (
                segment_data[0:patch_offset]
                + self.elf_sha256
                + segment_data[patch_offset + self.SHA256_DIGEST_LEN :]
            )
        return segment_data

    def save_segment(self, f, segment, checksum=None):
        """
        Save the next segment to the image file,
        return next checksum value if provided
        """
        segment_data = self.maybe_patch_segment_data(f, segment.data)
        f.write(struct.pack("<II", segment.addr, len(segment_data)))
        f.write(segment_data)
        if checksum is not None:
            return self.ROM_LOADER.checksum(segment_data, checksum)

    def read_checksum(self, f):
        """Return checksum from end of just-read image"""
        # Skip the padding. The checksum is stored in the last byte so that the
        # file is a multiple of 16 bytes.
        align_file_position(f, 16)
        checksum = f.read(1)
        if len(checksum) != 1:
            raise FatalError("End of file reading image checksum")
        return ord(checksum)

    def calculate_checksum(self):
        """
        Calculate checksum of loaded image, based on segments in
        segment array.
        """
        checksum = self.ROM_LOADER.ESP_CHECKSUM_MAGIC
        for seg in self.segments:
            if seg.include_in_checksum:
                checksum = self.ROM_LOADER.checksum(seg.data, checksum)
        return checksum

    def append_checksum(self, f, checksum):
        """Append checksum to the just-written image"""
        align_file_position(f, 16)
        f.write(struct.pack(b"B", checksum))

    def write_common_header(self, f, segments):
        f.write(
            struct.pack(
                "<BBBBI",
                self.ROM_LOADER.ESP_IMAGE_MAGIC,
                len(segments),
                self.flash_mode,
                self.flash_size_freq,
                self.entrypoint,
            )
        )

    def is_flash_addr(self, addr):
        return self.ROM_LOADER.is_flash_addr(addr)

    def merge_adjacent_segments(self):
        if not self.segments:
            return  # nothing to merge

        segments = []
        # The easiest way to merge the sections is the browse them backward.
        for i in range(len(self.segments) - 1, 0, -1):
            # elem is the previous section, the one `next_elem` may need to be
            # merged in
            elem = self.segments[i - 1]
            next_elem = self.segments[i]
            if all(
                (
                    elem.get_memory_type(self) == next_elem.get_memory_type(self),
                    elem.include_in_checksum == next_elem.include_in_checksum,
                    next_elem.addr == elem.addr + len(elem.data),
                )
            ):
                # Merge any segment that ends where the next one starts,
                # without spanning memory types
                #
                # (don't 'pad' any gaps here as they may be excluded from the image
                # due to 'noinit' or other reasons.)
                elem.data += next_elem.data
            else:
                # The section next_elem cannot be merged into the previous one,
                # which means it needs to be part of the final segments.
                # As we are browsing the list backward, the elements need to be
                # inserted at the beginning of the final list.
                segments.insert(0, next_elem)

        # The first segment will always be here as it cannot be merged into any
        # "previous" section.
        segments.insert(0, self.segments[0])

        # note: we could sort segments here as well, but the ordering of segments is
        # sometimes important for other reasons (like embedded ELF SHA-256),
        # so we assume that the linker script will have produced any adjacent sections
        # in linear order in the ELF, anyhow.
        self.segments = segments

    def check_flash_mappings(self, flash_segments, align):
        # check for multiple ELF sections that are mapped in the same
        # flash mapping region. This is usually a sign of a broken linker script,
        # but if you have a legitimate use case then let us know
        if len(flash_segments) > 0:
            last_addr = flash_segments[0].addr
            for segment in flash_segments[1:]:
                if segment.addr // align == last_addr // align:
                    raise InvalidExecutable(
                        "Segment loaded at 0x%08x lands in same 64KB flash mapping "
                        "as segment loaded at 0x%08x. Can't generate binary. "
                        "Suggest changing linker script or ELF to merge sections."
                        % (segment.addr, last_addr)
                    )
                last_addr = segment.addr


class ESP8266ROMFirmwareImage(BaseFirmwareImage):
    """Plain image loaded directly by the ESP8266 ROM, as used by the
    ESP8266_RTOS_SDK bootloader. Only loading is supported."""

    ROM_LOADER = ESP8266Profile

    def __init__(self, load_file=None):
        super(ESP8266ROMFirmwareImage, self).__init__()
        self.flash_mode = 0
        self.flash_size_freq = 0
        self.version = 1
        self.append_digest = False

        if load_file is not None:
            start = load_file.tell()
            segments = self.load_common_header(
                load_file, self.ROM_LOADER.ESP_IMAGE_MAGIC
            )

            for _ in range(segments):
                self.load_segment(load_file)
            self.checksum = self.read_checksum(load_file)
            self.data_length = load_file.tell() - start

            self.verify()


ESP8266Profile.BOOTLOADER_IMAGE = ESP8266ROMFirmwareImage


class ESP32FirmwareImage(BaseFirmwareImage):
    """ESP32 firmware image is very similar to V1 ESP8266 image,
    except with an additional 16 byte reserved header at top of image,
    and because of new flash mapping capabilities the flash-mapped regions
    can be placed in the normal image (just @ 64kB padded offsets).
    """

    ROM_LOADER = ESP32Profile

    # ROM bootloader will read the wp_pin field if SPI flash
    # pins are remapped via flash. IDF actually enables QIO only
    # from software bootloader, so this can be ignored. But needs
    # to be set to this value so ROM bootloader will skip it.
    WP_PIN_DISABLED = 0xEE

    EXTENDED_HEADER_STRUCT_FMT = "<BBBBHBHH" + ("B" * 4) + "B"

    IROM_ALIGN = 65536

    def __init__(self, load_file=None, append_digest=True):
        super(ESP32FirmwareImage, self).__init__()
        self.flash_mode = 0
        self.flash_size_freq = 0
        self.version = 1
        self.wp_pin = self.WP_PIN_DISABLED
        # SPI pin drive levels
        self.clk_drv = 0
        self.q_drv = 0
        self.d_drv = 0
        self.cs_drv = 0
        self.hd_drv = 0
        self.wp_drv = 0
        self.chip_id = 0
        self.min_rev = 0
        self.min_rev_full = 0
        self.max_rev_full = 65535

        self.append_digest = append_digest

        if load_file is not None:
            start = load_file.tell()

            segments = self.load_common_header(
                load_file, self.ROM_LOADER.ESP_IMAGE_MAGIC
            )
            self.load_extended_header(load_file)

            for _ in range(segments):
                self.load_segment(load_file)
            self.checksum = self.read_checksum(load_file)
            self.data_length = load_file.tell() - start

            if self.append_digest:
                self.stored_digest = load_file.read(self.SHA256_DIGEST_LEN)
                load_file.seek(start)
                self.calc_digest = hashlib.sha256(
                    load_file.read(self.data_length)
                ).digest()

            self.verify()

    def save(self):
        """Lay the image out in memory and return it as bytes"""
        total_segments = 0
        with io.BytesIO() as f:
            self.write_common_header(f, self.segments)

            # first 4 bytes of header are read by ROM bootloader for SPI
            # config, but currently unused
            self.save_extended_header(f)

            checksum = self.ROM_LOADER.ESP_CHECKSUM_MAGIC

            # split segments into flash-mapped vs ram-loaded,
            # and take copies so we can mutate them
            flash_segments = [
                copy.deepcopy(s)
                for s in sorted(self.segments, key=lambda s: s.addr)
                if self.is_flash_addr(s.addr)
            ]
            ram_segments = [
                copy.deepcopy(s)
                for s in sorted(self.segments, key=lambda s: s.addr)
                if not self.is_flash_addr(s.addr)
            ]

            # move ".flash.appdesc" segment to the top of the flash segment
            for segment in flash_segments:
                if segment.name == ".flash.appdesc":
                    flash_segments.remove(segment)
                    flash_segments.insert(0, segment)
                    break

            self.check_flash_mappings(flash_segments, self.IROM_ALIGN)

            def get_alignment_data_needed(segment):
                # Actual alignment (in data bytes) required for a segment header:
                # positioned so that after we write the next 8 byte header,
                # file_offs % IROM_ALIGN == segment.addr % IROM_ALIGN
                #
                # (this is because the segment's vaddr may not be IROM_ALIGNed,
                # more likely is aligned IROM_ALIGN+0x18
                # to account for the binary file header
                align_past = (segment.addr % self.IROM_ALIGN) - self.SEG_HEADER_LEN
                pad_len = (self.IROM_ALIGN - (f.tell() % self.IROM_ALIGN)) + align_past
                if pad_len == 0 or pad_len == self.IROM_ALIGN:
                    return 0  # already aligned

                # subtract SEG_HEADER_LEN a second time,
                # as the padding block has a header as well
                pad_len -= self.SEG_HEADER_LEN
                if pad_len < 0:
                    pad_len += self.IROM_ALIGN
                return pad_len

            # try to fit each flash segment on a 64kB aligned boundary
            # by padding with parts of the non-flash segments...
            while len(flash_segments) > 0:
                segment = flash_segments[0]
                pad_len = get_alignment_data_needed(segment)
                if pad_len > 0:  # need to pad
                    if len(ram_segments) > 0 and pad_len > self.SEG_HEADER_LEN:
                        pad_segment = ram_segments[0].split_image(pad_len)
                        if len(ram_segments[0].data) == 0:
                            ram_segments.pop(0)
                    else:
                        pad_segment = ImageSegment(0, b"\x00" * pad_len, f.tell())
                    checksum = self.save_segment(f, pad_segment, checksum)
                    total_segments += 1
                else:
                    # write the flash segment
                    assert (
                        f.tell() + 8
                    ) % self.IROM_ALIGN == segment.addr % self.IROM_ALIGN
                    checksum = self.save_flash_segment(f, segment, checksum)
                    flash_segments.pop(0)
                    total_segments += 1

            # flash segments all written, so write any remaining RAM segments
            for segment in ram_segments:
                checksum = self.save_segment(f, segment, checksum)
                total_segments += 1

            # done writing segments
            self.append_checksum(f, checksum)
            image_length = f.tell()

            # go back to the initial header and write the new segment count
            # that includes padding segments. This header is not checksummed
            f.seek(1)
            f.write(bytes([total_segments]))

            if self.append_digest:
                # calculate the SHA256 of the whole file and append it
                f.seek(0)
                digest = hashlib.sha256()
                digest.update(f.read(image_length))
                f.write(digest.digest())

            return f.getvalue()

    def save_flash_segment(self, f, segment, checksum=None):
        """
        Save the next segment to the image file, return next checksum value if provided
        """
        segment_end_pos = f.tell() + len(segment.data) + self.SEG_HEADER_LEN
        segment_len_remainder = segment_end_pos % self.IROM_ALIGN
        if segment_len_remainder < 0x24:
            # Work around a bug in ESP-IDF 2nd stage bootloader, that it didn't map the
            # last MMU page, if an IROM/DROM segment was < 0x24 bytes
            # over the page boundary.
            segment.data += b"\x00" * (0x24 - segment_len_remainder)
        return self.save_segment(f, segment, checksum)

    def load_extended_header(self, load_file):
        def split_byte(n):
            return (n & 0x0F, (n >> 4) & 0x0F)

        fields = list(
            struct.unpack(self.EXTENDED_HEADER_STRUCT_FMT, load_file.read(16))
        )

        self.wp_pin = fields[0]

        # SPI pin drive stengths are two per byte
        self.clk_drv, self.q_drv = split_byte(fields[1])
        self.d_drv, self.cs_drv = split_byte(fields[2])
        self.hd_drv, self.wp_drv = split_byte(fields[3])

        self.chip_id = fields[4]
        if self.chip_id != self.ROM_LOADER.IMAGE_CHIP_ID:
            log.warning(
                f"Unexpected chip ID in image. Expected {self.ROM_LOADER.IMAGE_CHIP_ID}"
                f" but value was {self.chip_id}. "
                "Is this image for a different chip model?"
            )

        self.min_rev = fields[5]
        self.min_rev_full = fields[6]
        self.max_rev_full = fields[7]

        # reserved fields in the middle should all be zero
        if any(f for f in fields[8:-1] if f != 0):
            log.warning(
                "Some reserved header fields have non-zero values. "
                "This image may be from a newer ESP-IDF version."
            )

        append_digest = fields[-1]  # last byte is append_digest
        if append_digest in [0, 1]:
            self.append_digest = append_digest == 1
        else:
            raise FatalError(
                f"Invalid value for append_digest field ({append_digest:#04x}). "
                "Should be 0 or 1."
            )

    def save_extended_header(self, save_file):
        def join_byte(ln, hn):
            return (ln & 0x0F) + ((hn & 0x0F) << 4)

        append_digest = 1 if self.append_digest else 0

        fields = [
            self.wp_pin,
            join_byte(self.clk_drv, self.q_drv),
            join_byte(self.d_drv, self.cs_drv),
            join_byte(self.hd_drv, self.wp_drv),
            self.ROM_LOADER.IMAGE_CHIP_ID,
            self.min_rev,
            self.min_rev_full,
            self.max_rev_full,
        ]
        fields += [0] * 4  # padding
        fields += [append_digest]

        packed = struct.pack(self.EXTENDED_HEADER_STRUCT_FMT, *fields)
        save_file.write(packed)


class ESP8266V3FirmwareImage(ESP32FirmwareImage):
    """ESP8266_RTOS_SDK application image, very similar to the ESP32 image
    but without the extended header"""

    ROM_LOADER = ESP8266Profile

    def save(self):
        total_segments = 0
        with io.BytesIO() as f:
            self.write_common_header(f, self.segments)

            checksum = self.ROM_LOADER.ESP_CHECKSUM_MAGIC

            # split segments into flash-mapped vs ram-loaded,
            # and take copies so we can mutate them
            flash_segments = [
                copy.deepcopy(s)
                for s in sorted(self.segments, key=lambda s: s.addr)
                if self.is_flash_addr(s.addr) and len(s.data)
            ]
            ram_segments = [
                copy.deepcopy(s)
                for s in sorted(self.segments, key=lambda s: s.addr)
                if not self.is_flash_addr(s.addr) and len(s.data)
            ]

            self.check_flash_mappings(flash_segments, self.IROM_ALIGN)

            for segment in flash_segments:
                # remove 8 bytes empty data for insert segment header
                if segment.name == ".flash.rodata":
                    segment.data = segment.data[8:]
                checksum = self.save_segment(f, segment, checksum)
                total_segments += 1

            # flash segments all written, so write any remaining RAM segments
            for segment in ram_segments:
                checksum = self.save_segment(f, segment, checksum)
                total_segments += 1

            self.append_checksum(f, checksum)
            image_length = f.tell()

            f.seek(1)
            f.write(bytes([total_segments]))

            if self.append_digest:
                f.seek(0)
                digest = hashlib.sha256()
                digest.update(f.read(image_length))
                f.write(digest.digest())

            return f.getvalue()


ESP8266Profile.FIRMWARE_IMAGE = ESP8266V3FirmwareImage

ESP32Profile.BOOTLOADER_IMAGE = ESP32FirmwareImage
ESP32Profile.FIRMWARE_IMAGE = ESP32FirmwareImage


class ESP32S2FirmwareImage(ESP32FirmwareImage):
    """ESP32S2 Firmware Image almost exactly the same as ESP32FirmwareImage"""

    ROM_LOADER = ESP32S2Profile


ESP32S2Profile.BOOTLOADER_IMAGE = ESP32S2FirmwareImage
ESP32S2Profile.FIRMWARE_IMAGE = ESP32S2FirmwareImage


class ESP32S3FirmwareImage(ESP32FirmwareImage):
    """ESP32S3 Firmware Image almost exactly the same as ESP32FirmwareImage"""

    ROM_LOADER = ESP32S3Profile


ESP32S3Profile.BOOTLOADER_IMAGE = ESP32S3FirmwareImage
ESP32S3Profile.FIRMWARE_IMAGE = ESP32S3FirmwareImage


class ESP32C3FirmwareImage(ESP32FirmwareImage):
    """ESP32C3 Firmware Image almost exactly the same as ESP32FirmwareImage"""

    ROM_LOADER = ESP32C3Profile


ESP32C3Profile.BOOTLOADER_IMAGE = ESP32C3FirmwareImage
ESP32C3Profile.FIRMWARE_IMAGE = ESP32C3FirmwareImage


class ELFFile(object):
    SEC_TYPE_PROGBITS = 0x01
    SEC_TYPE_STRTAB = 0x03
    SEC_TYPE_INITARRAY = 0x0E
    SEC_TYPE_FINIARRAY = 0x0F

    PROG_SEC_TYPES = (SEC_TYPE_PROGBITS, SEC_TYPE_INITARRAY, SEC_TYPE_FINIARRAY)

    LEN_FILE_HEADER = 0x34
    LEN_SEC_HEADER = 0x28

    ELFCLASS32 = 1
    ELFDATA2LSB = 1

    def __init__(self, data, name=None):
        """Parse the loadable sections of an ELF file given as bytes"""
        self.name = name or "ELF file"
        self.data = bytes(data)
        self._read_elf_file(io.BytesIO(self.data))

    @classmethod
    def from_source(cls, input: ImageSource):
        data, source = get_bytes(input)
        return cls(data, source)

    def _read_elf_file(self, f):
        try:
            (
                ident,
                _type,
                self.machine,
                _version,
                self.entrypoint,
                _phoff,
                shoff,
                _flags,
                _ehsize,
                _phentsize,
                _phnum,
                shentsize,
                shnum,
                shstrndx,
            ) = struct.unpack("<16sHHLLLLLHHHHHH", f.read(self.LEN_FILE_HEADER))
        except struct.error as e:
            raise InvalidExecutable(
                "Failed to read a valid ELF header from %s: %s" % (self.name, e)
            )

        if byte(ident, 0) != 0x7F or ident[1:4] != b"ELF":
            raise InvalidExecutable("%s has invalid ELF magic header" % self.name)
        if byte(ident, 4) != self.ELFCLASS32 or byte(ident, 5) != self.ELFDATA2LSB:
            raise InvalidExecutable(
                "%s is not a 32-bit little-endian ELF file" % self.name
            )
        if self.machine not in [EM_XTENSA, EM_RISCV]:
            raise InvalidExecutable(
                "%s does not appear to be an Xtensa or an RISCV ELF file. "
                "e_machine=%04x" % (self.name, self.machine)
            )
        if shentsize != self.LEN_SEC_HEADER:
            raise InvalidExecutable(
                "%s has unexpected section header entry size 0x%x (not 0x%x)"
                % (self.name, shentsize, self.LEN_SEC_HEADER)
            )
        if shnum == 0:
            raise InvalidExecutable("%s has 0 section headers" % (self.name))
        self._read_sections(f, shoff, shnum, shstrndx)

    def _read_sections(self, f, section_header_offs, section_header_count, shstrndx):
        f.seek(section_header_offs)
        len_bytes = section_header_count * self.LEN_SEC_HEADER
        section_header = f.read(len_bytes)
        if len(section_header) == 0:
            raise InvalidExecutable(
                "No section header found at offset %04x in ELF file."
                % section_header_offs
            )
        if len(section_header) != (len_bytes):
            raise InvalidExecutable(
                "Only read 0x%x bytes from section header (expected 0x%x.) "
                "Truncated ELF file?" % (len(section_header), len_bytes)
            )

        # walk through the section header and extract all sections
        section_header_offsets = range(0, len(section_header), self.LEN_SEC_HEADER)

        def read_section_header(offs):
            name_offs, sec_type, _flags, lma, sec_offs, size = struct.unpack_from(
                "<LLLLLL", section_header[offs:]
            )
            return (name_offs, sec_type, lma, size, sec_offs)

        all_sections = [read_section_header(offs) for offs in section_header_offsets]
        prog_sections = [s for s in all_sections if s[1] in ELFFile.PROG_SEC_TYPES]

        # search for the string table section
        if not (shstrndx * self.LEN_SEC_HEADER) in section_header_offsets:
            raise InvalidExecutable(
                "ELF file has no STRTAB section at shstrndx %d" % shstrndx
            )
        _, sec_type, _, sec_size, sec_offs = read_section_header(
            shstrndx * self.LEN_SEC_HEADER
        )
        if sec_type != ELFFile.SEC_TYPE_STRTAB:
            log.warning(f"ELF file has incorrect STRTAB section type {sec_type:#04x}")
        f.seek(sec_offs)
        string_table = f.read(sec_size)

        # build the real list of ELFSections by reading the actual section names from
        # the string table section, and actual data for each section
        # from the ELF file itself
        def lookup_string(offs):
            raw = string_table[offs:]
            end = raw.find(b"\x00")
            if end < 0:
                raise InvalidExecutable(
                    "Section name at offset %d is not terminated" % offs
                )
            try:
                return raw[:end].decode("utf-8")
            except UnicodeDecodeError:
                raise InvalidExecutable(
                    "Section name %r at offset %d is not UTF-8" % (raw[:end], offs)
                )

        def read_data(offs, size):
            f.seek(offs)
            data = f.read(size)
            if len(data) != size:
                raise InvalidExecutable(
                    "Only read 0x%x bytes of section data at 0x%x (expected 0x%x). "
                    "Truncated ELF file?" % (len(data), offs, size)
                )
            return data

        prog_sections = [
            ELFSection(lookup_string(n_offs), lma, read_data(offs, size))
            for (n_offs, _type, lma, size, offs) in prog_sections
            if lma != 0 and size > 0
        ]
        self.sections = prog_sections

    def sha256(self):
        # return SHA256 hash of the input ELF file
        return hashlib.sha256(self.data).digest()


def build_firmware_image(
    elf: ELFFile | ImageSource,
    chip: str | type[ChipProfile],
    flash_size: str = DEFAULT_FLASH_SIZE,
    flash_mode: str = DEFAULT_FLASH_MODE,
    flash_freq: str | None = DEFAULT_FLASH_FREQ,
    max_size: int | None = None,
) -> bytes:
    """
    Convert ELF data into an application image for the given chip family.

    Args:
        elf: Parsed ELFFile, or the ELF as a path, bytes, or opened binary file.
        chip: Chip name or ChipProfile class.
        flash_size: Flash size to set in the image header.
        flash_mode: Flash mode to set in the image header.
        flash_freq: Flash frequency to set in the image header.
        max_size: Maximum length of the image in bytes. Defaults to the flash size.

    Returns:
        The application image as bytes.
    """
    profile = resolve_chip(chip) if isinstance(chip, str) else chip
    if not isinstance(elf, ELFFile):
        elf = ELFFile.from_source(elf)

    if elf.machine != profile.ELF_MACHINE:
        raise InvalidExecutable(
            f"{elf.name} was built for a different architecture "
            f"(e_machine={elf.machine:#04x}) than {profile.CHIP_NAME} "
            f"(e_machine={profile.ELF_MACHINE:#04x})."
        )
    if not elf.sections:
        raise InvalidExecutable(f"{elf.name} has no loadable sections.")

    log.print(f"Creating {profile.CHIP_NAME} image...")
    image = profile.FIRMWARE_IMAGE()
    image.entrypoint = elf.entrypoint
    image.flash_mode = profile.parse_flash_mode_arg(flash_mode)
    image.flash_size_freq = profile.parse_flash_size_arg(flash_size)
    image.flash_size_freq += profile.parse_flash_freq_arg(flash_freq)

    # ELFSection is a subclass of ImageSegment, so can use interchangeably.
    # Work on copies, merging below mutates the segments.
    image.segments = [copy.deepcopy(s) for s in elf.sections]

    # If ELF file contains an app_desc section and it is in flash,
    # put the SHA256 digest at correct offset.
    appdesc_segs = [seg for seg in image.segments if ".flash.appdesc" in seg.name]
    if appdesc_segs and image.is_flash_addr(appdesc_segs[0].addr):
        image.elf_sha256 = elf.sha256()
        image.elf_sha256_offset = APP_DESC_ELF_SHA256_OFFSET

    before = len(image.segments)
    image.merge_adjacent_segments()
    if len(image.segments) != before:
        delta = before - len(image.segments)
        log.print(f"Merged {delta} ELF section{'s' if delta > 1 else ''}.")

    image.verify()
    for segment in image.segments:
        log.detail(f"  {segment!r}")

    data = image.save()
    if max_size is None:
        max_size = flash_size_bytes(flash_size.split("-")[0])
    if len(data) > max_size:
        raise InvalidExecutable(
            f"Application image is {len(data):#x} bytes, which doesn't fit into "
            f"the {max_size:#x} bytes available with {flash_size} flash."
        )
    log.print(f"Successfully created {profile.CHIP_NAME} image ({len(data)} bytes).")
    return data
