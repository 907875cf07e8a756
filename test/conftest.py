import os
import struct

import pytest

SHT_PROGBITS = 0x01
SHT_STRTAB = 0x03
SHT_NOBITS = 0x08

EM_XTENSA = 0x5E
EM_RISCV = 0xF3

# Internal RAM load addresses of the supported chips
IRAM_ADDR = {
    "esp32": 0x40080000,
    "esp32s2": 0x40020000,
    "esp32s3": 0x40370000,
    "esp32c3": 0x4037C000,
    "esp8266": 0x40100000,
}

MACHINE = {
    "esp32": EM_XTENSA,
    "esp32s2": EM_XTENSA,
    "esp32s3": EM_XTENSA,
    "esp32c3": EM_RISCV,
    "esp8266": EM_XTENSA,
}


def pytest_configure(config):
    # register custom markers
    config.addinivalue_line(
        "markers",
        "host_test: mark espwebflash tests that run on the host machine only "
        "(don't require a real chip connected).",
    )


def need_to_install_package_err():
    pytest.exit(
        "To run the tests, install espwebflash in development mode: "
        "pip install -e .[test]"
    )


def make_elf(sections, machine=EM_XTENSA, entry=None, elf_class=1):
    """
    Build a minimal little-endian 32-bit ELF file in memory.

    sections - list of (name, sh_type, addr, data) tuples, written in order.
    Returns the ELF file as bytes.
    """
    if entry is None:
        entry = sections[0][2] if sections else 0
    header_len = 0x34
    body = b""
    shstrtab = b"\x00"
    headers = [struct.pack("<LLLLLLLLLL", *([0] * 10))]  # SHN_UNDEF
    for name, sh_type, addr, data in sections:
        name_offs = len(shstrtab)
        shstrtab += name.encode() + b"\x00"
        offset = header_len + len(body)
        if sh_type != SHT_NOBITS:
            body += data
        headers.append(
            struct.pack(
                "<LLLLLLLLLL",
                name_offs,
                sh_type,
                0x6,  # SHF_ALLOC | SHF_EXECINSTR
                addr,
                offset,
                len(data),
                0,
                0,
                4,
                0,
            )
        )
    name_offs = len(shstrtab)
    shstrtab += b".shstrtab\x00"
    shstrtab_offs = header_len + len(body)
    body += shstrtab
    headers.append(
        struct.pack(
            "<LLLLLLLLLL",
            name_offs,
            SHT_STRTAB,
            0,
            0,
            shstrtab_offs,
            len(shstrtab),
            0,
            0,
            1,
            0,
        )
    )
    body += b"\x00" * (-(header_len + len(body)) % 4)
    shoff = header_len + len(body)

    ident = b"\x7fELF" + bytes([elf_class, 1, 1]) + b"\x00" * 9
    file_header = struct.pack(
        "<16sHHLLLLLHHHHHH",
        ident,
        2,  # ET_EXEC
        machine,
        1,
        entry,
        0,
        shoff,
        0,
        header_len,
        0,
        0,
        0x28,
        len(headers),
        len(headers) - 1,
    )
    return file_header + body + b"".join(headers)


def make_app_elf(chip, data=bytes(range(16)), name=".iram0.text"):
    """ELF with a single loadable section in the chip's internal RAM"""
    return make_elf(
        [(name, SHT_PROGBITS, IRAM_ADDR[chip], data)], machine=MACHINE[chip]
    )


@pytest.fixture
def elf_file(tmp_path):
    def _write(chip="esp32", **kwargs):
        path = tmp_path / f"app_{chip}.elf"
        path.write_bytes(make_app_elf(chip, **kwargs))
        return str(path)

    return _write


@pytest.fixture(scope="session", autouse=True)
def set_terminal_width():
    """Make sure terminal width is set to 120 columns for consistent test output."""
    os.environ["COLUMNS"] = "120"


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path_factory):
    """Keep config files and ESPWEBFLASH_* variables of the host out of the tests"""
    for name in list(os.environ):
        if name.startswith("ESPWEBFLASH_"):
            monkeypatch.delenv(name)
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(home)
