######################################################################
#                                                                    #
#  Copyright 2023 The gdsmerge developers.                           #
#  This file is part of gdsmerge, distributed under the terms of the #
#  Boost Software License - Version 1.0.  See the accompanying       #
#  LICENSE file or <http://www.boost.org/LICENSE_1_0.txt>            #
#                                                                    #
######################################################################

import io
import os
import datetime

import pytest
import gdsmerge

import tutils


@pytest.fixture
def inputs(tmpdir):
    in1 = tutils.library(
        tutils.structure("cell_a", tutils.boundary(1)),
        tutils.structure("cell_b", tutils.boundary(2), tutils.sref("cell_a", (3, 4))),
        name="in1",
    )
    in2 = tutils.library(
        tutils.structure("cell_a", tutils.boundary(10), tutils.text("A")),
        tutils.structure("cell_a_2", tutils.aref("cell_a")),
        tutils.structure(
            "cell_b", tutils.sref("cell_a_2", (0, 0), 90), tutils.sref("cell_a")
        ),
        name="in2",
    )
    return (
        tutils.write(tmpdir, "in1.gds", in1),
        tutils.write(tmpdir, "in2.gds", in2),
    )


def read(fname):
    return gdsmerge.GdsLibrary(infile=fname)


def test_cascading_rename(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    maps = gdsmerge.merge(out, inputs)
    assert maps == [
        {"cell_a": "cell_a", "cell_b": "cell_b"},
        {"cell_a": "cell_a_2", "cell_a_2": "cell_a_2_2", "cell_b": "cell_b_2"},
    ]
    lib = read(out)
    assert lib.name == "in1"
    assert [s.name for s in lib] == [
        "cell_a",
        "cell_b",
        "cell_a_2",
        "cell_a_2_2",
        "cell_b_2",
    ]


def test_reference_integrity(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    gdsmerge.merge(out, inputs)
    lib = read(out)
    assert [r.ref_name for r in lib["cell_b"].references] == ["cell_a"]
    assert [r.ref_name for r in lib["cell_a_2_2"].references] == ["cell_a_2"]
    assert [r.ref_name for r in lib["cell_b_2"].references] == ["cell_a_2_2", "cell_a_2"]
    assert lib["cell_a_2_2"].references[0].is_array


def test_payload_unchanged(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    gdsmerge.merge(out, inputs)
    lib = read(out)
    assert lib["cell_a_2"].elements[0].data == tutils.boundary(10)
    assert lib["cell_a_2"].elements[1].data == tutils.text("A")
    ref = lib["cell_b_2"].references[0]
    expected = tutils.sref("cell_a_2_2", (0, 0), 90)
    assert ref.prefix + tutils.string(0x12, "cell_a_2_2") + ref.suffix == expected


def test_output_bytes(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    gdsmerge.merge(out, inputs)
    expected = tutils.library(
        tutils.structure("cell_a", tutils.boundary(1)),
        tutils.structure("cell_b", tutils.boundary(2), tutils.sref("cell_a", (3, 4))),
        tutils.structure("cell_a_2", tutils.boundary(10), tutils.text("A")),
        tutils.structure("cell_a_2_2", tutils.aref("cell_a_2")),
        tutils.structure(
            "cell_b_2",
            tutils.sref("cell_a_2_2", (0, 0), 90),
            tutils.sref("cell_a_2"),
        ),
        name="in1",
    )
    with open(out, "rb") as fin:
        assert fin.read() == expected


def test_inputs_unchanged(tmpdir, inputs):
    libs = [read(f) for f in inputs]
    merged, maps = gdsmerge.merge_libraries(libs)
    assert [s.name for s in libs[1]] == ["cell_a", "cell_a_2", "cell_b"]
    assert [r.ref_name for r in libs[1]["cell_b"].references] == [
        "cell_a_2",
        "cell_a",
    ]
    assert len(merged) == 5


def test_unique_names(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    gdsmerge.merge(out, list(inputs) * 3)
    names = [s.name for s in read(out)]
    assert len(names) == 15
    assert len(set(names)) == 15


def test_deterministic(tmpdir, inputs):
    out1 = str(tmpdir.join("out1.gds"))
    out2 = str(tmpdir.join("out2.gds"))
    maps1 = gdsmerge.merge(out1, inputs)
    maps2 = gdsmerge.merge(out2, inputs)
    assert maps1 == maps2
    with open(out1, "rb") as f1, open(out2, "rb") as f2:
        assert f1.read() == f2.read()


def test_order_sensitive(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    maps = gdsmerge.merge(out, inputs[::-1])
    assert maps[0] == {"cell_a": "cell_a", "cell_a_2": "cell_a_2", "cell_b": "cell_b"}
    assert maps[1] == {"cell_a": "cell_a_3", "cell_b": "cell_b_2"}
    lib = read(out)
    assert lib.name == "in2"
    assert lib["cell_a"].elements[0].data == tutils.boundary(10)
    assert lib["cell_a_3"].elements[0].data == tutils.boundary(1)
    assert [r.ref_name for r in lib["cell_b_2"].references] == ["cell_a_3"]


def test_single_file_identity(tmpdir, inputs):
    out = str(tmpdir.join("out.gds"))
    maps = gdsmerge.merge(out, inputs[1:])
    assert all(k == v for k, v in maps[0].items())
    with open(out, "rb") as fout, open(inputs[1], "rb") as fin:
        assert fout.read() == fin.read()
    assert gdsmerge.gdsii_hash(out) == gdsmerge.gdsii_hash(inputs[1])


def test_dangling_reference(tmpdir, inputs):
    bad = tutils.write(
        tmpdir,
        "bad.gds",
        tutils.library(tutils.structure("top", tutils.sref("nowhere"))),
    )
    out = tmpdir.join("out.gds")
    with pytest.raises(gdsmerge.DanglingReferenceError) as e:
        gdsmerge.merge(out, [inputs[0], bad])
    assert e.value.filename == bad
    assert e.value.ref_name == "nowhere"
    assert not out.exists()


def test_truncated(tmpdir, inputs):
    with open(inputs[1], "rb") as fin:
        data = fin.read()
    bad = tutils.write(tmpdir, "trunc.gds", data[: len(data) // 2 + 1])
    out = tmpdir.join("out.gds")
    with pytest.raises(gdsmerge.GdsFormatError) as e:
        gdsmerge.merge(out, [inputs[0], bad])
    assert e.value.filename == bad
    assert not out.exists()


def test_failure_keeps_existing_output(tmpdir, inputs):
    out = tmpdir.join("out.gds")
    out.write_binary(b"previous")
    bad = tutils.write(tmpdir, "bad.gds", b"\x00\x04")
    with pytest.raises(gdsmerge.GdsFormatError):
        gdsmerge.merge(out, [inputs[0], bad])
    assert out.read_binary() == b"previous"
    assert [p.basename for p in tmpdir.listdir()
            if p.basename.startswith(".gdsmerge-")] == []


def test_missing_input(tmpdir, inputs):
    out = tmpdir.join("out.gds")
    missing = str(tmpdir.join("missing.gds"))
    with pytest.raises(OSError) as e:
        gdsmerge.merge(out, [inputs[0], missing])
    assert e.value.filename == missing
    assert not out.exists()


def test_unit_mismatch(tmpdir, inputs):
    other = tutils.write(
        tmpdir,
        "nm.gds",
        tutils.library(tutils.structure("x"), unit=1e-9, precision=1e-12),
    )
    out = tmpdir.join("out.gds")
    with pytest.raises(gdsmerge.UnitMismatchError) as e:
        gdsmerge.merge(out, [inputs[0], other])
    assert e.value.filenames == (inputs[0], other)
    assert not out.exists()


def test_name_and_timestamp(tmpdir, inputs):
    ts = datetime.datetime(1988, 8, 28)
    out = str(tmpdir.join("out.gds"))
    gdsmerge.merge(out, inputs, name="merged", timestamp=ts)
    lib = read(out)
    assert lib.name == "merged"
    out2 = str(tmpdir.join("out2.gds"))
    gdsmerge.merge(out2, inputs[::-1], name="merged", timestamp=ts)
    assert gdsmerge.gdsii_hash(out) != gdsmerge.gdsii_hash(out2)
    with open(out, "rb") as fin:
        data = fin.read()
    assert tutils.timestamp(ts) in data
    assert tutils.timestamp() not in data


def test_open_file_output(tmpdir, inputs):
    out = io.BytesIO()
    with open(inputs[0], "rb") as in1, open(inputs[1], "rb") as in2:
        gdsmerge.merge(out, [in1, in2])
        assert not in1.closed
    lib = gdsmerge.GdsLibrary(infile=io.BytesIO(out.getvalue()))
    assert len(lib) == 5


def test_no_inputs(tmpdir):
    with pytest.raises(ValueError):
        gdsmerge.merge(str(tmpdir.join("out.gds")), [])
    assert not os.path.exists(str(tmpdir.join("out.gds")))


def test_non_ascii_string_names_file(tmpdir, inputs):
    bad = tutils.write(
        tmpdir,
        "bad.gds",
        tutils.header()
        + tutils.record(0x05, 0x02, tutils.timestamp())
        + tutils.record(0x06, 0x06, b"c\xe9ll")
        + tutils.record(0x07, 0x00)
        + tutils.record(0x04, 0x00),
    )
    out = tmpdir.join("out.gds")
    with pytest.raises(gdsmerge.GdsFormatError) as e:
        gdsmerge.merge(out, [inputs[0], bad])
    assert e.value.filename == bad
    assert e.value.offset is not None
    assert bad in str(e.value)
    assert not out.exists()


def test_malformed_units_names_file(tmpdir, inputs):
    data = tutils.library(tutils.structure("x"))
    # UNITS payload cut to a single real
    units = data.index(b"\x00\x14\x03\x05")
    data = (
        data[:units]
        + b"\x00\x0c\x03\x05"
        + data[units + 4 : units + 12]
        + data[units + 20 :]
    )
    bad = tutils.write(tmpdir, "units.gds", data)
    with pytest.raises(gdsmerge.GdsFormatError) as e:
        gdsmerge.merge(tmpdir.join("out.gds"), [inputs[0], bad])
    assert e.value.filename == bad
    with pytest.raises(gdsmerge.GdsFormatError) as e:
        gdsmerge.get_gds_units(bad)
    assert e.value.filename == bad


def test_non_ascii_name(tmpdir, inputs):
    out = tmpdir.join("out.gds")
    with pytest.raises(ValueError):
        gdsmerge.merge(out, inputs, name="ch\xefp")
    assert not out.exists()
