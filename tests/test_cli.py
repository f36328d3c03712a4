import json

import pytest

from archive_builders import build_rp6l, texture_payload
from rpack_extract import (
    DEFAULT_TYPES,
    ExtractOptions,
    build_arg_parser,
    load_config,
    main,
    options_from_config,
    parse_types,
    resolve_options,
    run_batch,
)


def write_archive(path, name="foo"):
    payload = texture_payload(2, 2, 2, bytes([0, 255, 0, 255] * 4))
    path.write_bytes(
        build_rp6l(
            sections=[(0x20, payload, True), (0x30, b"mat", False)],
            parts=[(0, 0, len(payload)), (1, 0, 3)],
            files=[(1, 0x20, 0), (1, 0x30, 1)],
            names=[name, name + "_mat"],
        )
    )
    return path


def test_parse_types_names_and_codes():
    assert parse_types("mesh, texture") == {0x10, 0x20}
    assert parse_types(["0x40", "sound_music", 48]) == {0x40, 0x66, 0x30}
    assert parse_types("all") is None
    assert parse_types(None) == DEFAULT_TYPES


@pytest.mark.parametrize("raw", ["", "bogus", "0x1FF"])
def test_parse_types_rejects_bad_input(raw):
    with pytest.raises(ValueError):
        parse_types(raw)


def test_config_file_values(tmp_path):
    cfg = tmp_path / "cfg.json"
    cfg.write_text(
        json.dumps({"types": ["material"], "png_preview": "yes", "workers": "3", "output_root": str(tmp_path / "o")}),
        encoding="utf-8-sig",
    )
    opts = options_from_config(load_config(cfg))
    assert opts.types == {0x30}
    assert opts.png_preview is True
    assert opts.workers == 3
    assert opts.output_root == tmp_path / "o"
    assert opts.report is None


def test_config_missing_or_invalid(tmp_path):
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(bad)


def test_command_line_overrides_config(tmp_path):
    cfg = tmp_path / "cfg.json"
    cfg.write_text(json.dumps({"types": "mesh", "workers": 4}), encoding="utf-8")
    args = build_arg_parser().parse_args(["x.rpack", "--config", str(cfg), "--all-types", "--workers", "1"])
    opts = resolve_options(args)
    assert opts.types is None
    assert opts.workers == 1


def test_run_batch_continues_after_failure(tmp_path):
    good = write_archive(tmp_path / "good.rpack")
    bad = tmp_path / "bad.rpack"
    bad.write_bytes(b"RP6L\x01")
    reports = run_batch([bad, good], ExtractOptions())
    assert [r.ok for r in reports] == [False, True]
    assert reports[1].extracted == 1


def test_main_extracts_and_writes_report(tmp_path, capsys):
    src = write_archive(tmp_path / "pack.rpack")
    report = tmp_path / "report.json"

    code = main([str(src), "--types", "texture,material", "--png", "--report", str(report)])

    assert code == 0
    out = tmp_path / "pack_extracted"
    assert (out / "texture" / "foo.dds").exists()
    assert (out / "texture" / "foo.png").exists()
    assert (out / "material" / "foo_mat").read_bytes() == b"mat"
    data = json.loads(report.read_text(encoding="utf-8"))
    assert data["archives"] == 1
    assert data["failed"] == 0
    assert data["extracted"] == 2
    assert data["items"][0]["status"] == "ok"
    assert "[OK]" in capsys.readouterr().out


def test_main_returns_error_for_missing_input(tmp_path, capsys):
    src = write_archive(tmp_path / "pack.rpack")
    code = main([str(src), str(tmp_path / "nope.rpack")])
    assert code == 1
    assert "File not found" in capsys.readouterr().out


def test_main_list_mode(tmp_path, capsys):
    src = write_archive(tmp_path / "pack.rpack")
    assert main([str(src), "--list"]) == 0
    text = capsys.readouterr().out
    assert "texture" in text
    assert "foo_mat" in text
    assert not (tmp_path / "pack_extracted").exists()


def test_main_bad_types_option(tmp_path, capsys):
    src = write_archive(tmp_path / "pack.rpack")
    assert main([str(src), "--types", "nonsense"]) == 2
    assert "[ERROR]" in capsys.readouterr().out
