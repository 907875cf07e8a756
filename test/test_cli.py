import json
import os
import subprocess
import sys

import pytest
from intelhex import IntelHex

from conftest import make_app_elf, need_to_install_package_err

try:
    import espwebflash
    from espwebflash import expand_file_arguments, main
    from espwebflash.bin_image import build_firmware_image
    from espwebflash.cmds import export_parts, prepare_parts
    from espwebflash.partition_table import PartitionTable
    from espwebflash.targets import resolve_chip
    from espwebflash.util import FatalError, MissingBootloader
except ImportError:
    need_to_install_package_err()


def run_espwebflash(*args, check=True):
    """Run espwebflash as a separate process, return (returncode, stdout+stderr)"""
    cmd = [sys.executable, "-m", "espwebflash", *args]
    print(f"\nExecuting {' '.join(cmd)}")
    result = subprocess.run(
        cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True
    )
    print(result.stdout)
    if check:
        assert result.returncode == 0, result.stdout
    return result.returncode, result.stdout


@pytest.fixture
def bootloader_file(tmp_path):
    def _write(chip="esp32"):
        path = tmp_path / f"bootloader_{chip}.bin"
        path.write_bytes(build_firmware_image(make_app_elf(chip), chip))
        return str(path)

    return _write


def read_manifest(directory):
    with open(os.path.join(directory, "manifest.json")) as f:
        return json.load(f)


@pytest.mark.host_test
class TestExport:
    def test_export(self, tmp_path, elf_file, bootloader_file):
        out = str(tmp_path / "out")
        _, output = run_espwebflash(
            "--chip",
            "ESP32-C3",
            "--bootloader",
            bootloader_file("esp32c3"),
            "--export",
            out,
            elf_file("esp32c3"),
        )
        assert "Wrote 4 files" in output
        assert sorted(os.listdir(out)) == [
            "bootloader.bin",
            "firmware.bin",
            "manifest.json",
            "partitions.bin",
        ]
        manifest = read_manifest(out)
        assert manifest["new_install_prompt_erase"] is True
        build = manifest["builds"][0]
        assert build["chipFamily"] == "ESP32-C3"
        assert [(p["path"], p["offset"]) for p in build["parts"]] == [
            ("bootloader.bin", 0x0),
            ("partitions.bin", 0x8000),
            ("firmware.bin", 0x10000),
        ]
        with open(os.path.join(out, "partitions.bin"), "rb") as f:
            table = PartitionTable.from_binary(f.read())
        assert table == PartitionTable.default(resolve_chip("esp32c3"))

    def test_default_bootloader_and_csv_table(self, tmp_path, elf_file):
        bootloaders = tmp_path / "bootloaders"
        bootloaders.mkdir()
        (bootloaders / "bootloader_esp32.bin").write_bytes(
            build_firmware_image(make_app_elf("esp32"), "esp32")
        )
        csv = tmp_path / "partitions.csv"
        csv.write_text("nvs, data, nvs, , 0x6000\nfactory, app, factory, , 2M\n")
        out = str(tmp_path / "out")
        run_espwebflash(
            "-c",
            "esp32",
            "--bootloader-dir",
            str(bootloaders),
            "-p",
            str(csv),
            "-fs",
            "8MB",
            "--export",
            out,
            elf_file("esp32"),
        )
        with open(os.path.join(out, "partitions.bin"), "rb") as f:
            table = PartitionTable.from_binary(f.read(), "8MB")
        assert table["factory"].offset == 0x10000
        assert table["factory"].size == 0x200000
        with open(os.path.join(out, "firmware.bin"), "rb") as f:
            assert f.read(4)[3] == 0x30  # 8MB, 40m

    def test_chip_and_config_from_environment(self, tmp_path, elf_file, monkeypatch):
        monkeypatch.setenv("ESPWEBFLASH_CHIP", "esp32s3")
        with open("espwebflash.cfg", "w") as f:
            f.write("[espwebflash]\napp_name = Blinky\nerase_before_install = no\n")
        bootloaders = tmp_path / "bootloaders"
        bootloaders.mkdir()
        (bootloaders / "bootloader_esp32s3.bin").write_bytes(b"\x00" * 16)
        monkeypatch.setenv("ESPWEBFLASH_BOOTLOADER_DIR", str(bootloaders))
        out = str(tmp_path / "out")
        _, output = run_espwebflash("--export", out, elf_file("esp32s3"))
        assert "Loaded custom configuration" in output
        manifest = read_manifest(out)
        assert manifest["name"] == "Blinky"
        assert manifest["new_install_prompt_erase"] is False
        assert manifest["builds"][0]["chipFamily"] == "ESP32-S3"

    def test_file_arguments(self, tmp_path, elf_file, bootloader_file):
        out = str(tmp_path / "out")
        args = tmp_path / "args.txt"
        args.write_text(
            f"--chip esp32\n--bootloader {bootloader_file()}\n--export {out}\n"
        )
        run_espwebflash(f"@{args}", elf_file("esp32"))
        assert os.path.exists(os.path.join(out, "firmware.bin"))


@pytest.mark.host_test
class TestErrors:
    def test_unsupported_chip(self, elf_file):
        code, output = run_espwebflash(
            "--chip", "esp32c6", elf_file("esp32"), check=False
        )
        assert code == 2
        assert "esp32c6" in output

    def test_missing_chip(self, elf_file):
        code, output = run_espwebflash(elf_file("esp32"), check=False)
        assert code == 2
        assert "--chip" in output

    def test_missing_bootloader(self, tmp_path, elf_file):
        code, output = run_espwebflash(
            "--chip",
            "esp32",
            "--bootloader-dir",
            str(tmp_path),
            "--export",
            str(tmp_path / "out"),
            elf_file("esp32"),
            check=False,
        )
        assert code == 2
        assert "A fatal error occurred: No bootloader given" in output
        assert not os.path.exists(tmp_path / "out")

    def test_invalid_elf(self, tmp_path, bootloader_file):
        elf = tmp_path / "app.elf"
        elf.write_bytes(b"not an ELF file at all")
        code, output = run_espwebflash(
            "--chip", "esp32", "--bootloader", bootloader_file(), str(elf), check=False
        )
        assert code == 2
        assert "A fatal error occurred" in output

    def test_malformed_partition_table(self, tmp_path, elf_file, bootloader_file):
        csv = tmp_path / "partitions.csv"
        csv.write_text("nvs, data, nvs, 0x9000, 0x6000\nphy, data, phy, 0xa000, 4K\n")
        code, output = run_espwebflash(
            "--chip",
            "esp32",
            "--bootloader",
            bootloader_file(),
            "-p",
            str(csv),
            elf_file("esp32"),
            check=False,
        )
        assert code == 2
        assert "overlaps 'nvs'" in output

    def test_invalid_flash_size(self, elf_file, bootloader_file):
        code, output = run_espwebflash(
            "--chip",
            "esp32",
            "--bootloader",
            bootloader_file(),
            "--flash-size",
            "xMB",
            elf_file("esp32"),
            check=False,
        )
        assert code == 2
        assert "A fatal error occurred: Flash size 'xMB'" in output

    def test_version(self):
        _, output = run_espwebflash("--version")
        assert output.strip() == espwebflash.__version__


@pytest.mark.host_test
class TestInProcess:
    def test_serve_settings(self, monkeypatch, elf_file, bootloader_file):
        calls = []
        monkeypatch.setattr(
            espwebflash, "serve", lambda parts, **kw: calls.append((parts, kw))
        )
        monkeypatch.setenv("ESPWEBFLASH_BROWSER_DELAY", "0.5")
        with open("espwebflash.cfg", "w") as f:
            f.write("[espwebflash]\nhost = 0.0.0.0\nport = 9000\n")
        with pytest.raises(SystemExit) as e:
            main(
                [
                    "--chip",
                    "esp32",
                    "--bootloader",
                    bootloader_file(),
                    "--port",
                    "0x2329",
                    "--no-browser",
                    elf_file("esp32"),
                ]
            )
        assert e.value.code == 0
        parts, kw = calls[0]
        assert parts.chip_family == "ESP32"
        assert kw["host"] == "0.0.0.0"  # from the config file
        assert kw["port"] == 9001  # command line wins
        assert kw["open_browser"] is False
        assert kw["browser_delay"] == 0.5

    def test_invalid_port_setting(self, monkeypatch, elf_file, bootloader_file):
        monkeypatch.setattr(espwebflash, "serve", lambda parts, **kw: None)
        monkeypatch.setenv("ESPWEBFLASH_PORT", "eighty")
        with pytest.raises(FatalError, match="option .port., expected an integer"):
            main(["--chip", "esp32", "-b", bootloader_file(), elf_file("esp32")])

    def test_prepare_and_export(self, tmp_path, bootloader_file):
        parts = prepare_parts(
            make_app_elf("esp32s2"),
            "esp32s2",
            bootloader=bootloader_file("esp32s2"),
        )
        assert parts.bootloader_offset == 0x1000
        written = export_parts(parts, str(tmp_path / "site"), "Blinky", erase=False)
        assert [os.path.basename(p) for p in written] == [
            "bootloader.bin",
            "partitions.bin",
            "firmware.bin",
            "manifest.json",
        ]
        with open(written[2], "rb") as f:
            assert f.read() == parts.firmware

    def test_prepare_missing_bootloader(self, tmp_path):
        with pytest.raises(MissingBootloader):
            prepare_parts(make_app_elf("esp32"), "esp32", bootloader_dir=str(tmp_path))

    def test_prepare_unsupported_chip(self):
        with pytest.raises(FatalError, match="Unsupported chip 'esp32h2'"):
            prepare_parts(make_app_elf("esp32"), "esp32h2")

    def test_hex_bootloader_converted_once(self, tmp_path, elf_file):
        # bootloader contents which are themselves valid Intel HEX text
        payload = b":02000000E9E92C\n:00000001FF\n"
        path = str(tmp_path / "bootloader.hex")
        ih = IntelHex()
        ih.puts(0, payload)
        ih.write_hex_file(path)

        parts = prepare_parts(make_app_elf("esp32"), "esp32", bootloader=path)
        assert parts.bootloader == payload
        with open(path, "rb") as f:
            parts = prepare_parts(make_app_elf("esp32"), "esp32", bootloader=f)
        assert parts.bootloader == payload
        # bytes are taken as given
        parts = prepare_parts(make_app_elf("esp32"), "esp32", bootloader=payload)
        assert parts.bootloader == payload

        out = str(tmp_path / "out")
        run_espwebflash(
            "--chip", "esp32", "--bootloader", path, "--export", out, elf_file("esp32")
        )
        with open(os.path.join(out, "bootloader.bin"), "rb") as f:
            assert f.read() == payload

    def test_expand_file_arguments(self, tmp_path):
        args = tmp_path / "args.txt"
        args.write_text("--chip esp32\n--port 9000 --no-browser\n")
        assert expand_file_arguments(["-v", f"@{args}", "app.elf"]) == [
            "-v",
            "--chip",
            "esp32",
            "--port",
            "9000",
            "--no-browser",
            "app.elf",
        ]
        assert expand_file_arguments(["app.elf"]) == ["app.elf"]
