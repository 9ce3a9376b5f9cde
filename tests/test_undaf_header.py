"""
Unit tests for undaf - File record tests

This test file covers opening a DAF: byte order and file type detection,
the summary layout computed from ND/NI, the comment area and the errors
that abort opening a damaged file.
"""

import io
import logging
import os
import sys
import tempfile

import pytest

# Add the lib directory to the path to import undaf
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'lib')))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import undaf
from daf_builder import (build_daf, patch_f64, patch_i32, spk_segment, ck_segment,
                         bpck_segment)


@pytest.fixture
def temp_file():
    """Set up a temporary file for tests."""
    temp = tempfile.NamedTemporaryFile(delete=False)
    temp.close()
    yield temp
    # Clean up temporary files after tests
    if os.path.exists(temp.name):
        os.unlink(temp.name)


def open_daf(blob):
    return undaf.DAFFile(io.BytesIO(blob))


def simple_spk(**kwargs):
    return build_daf([[spk_segment('EARTH', 399, 3, data=[1.0, 2.0])]], **kwargs)


@pytest.mark.parametrize('byteorder', ['little', 'big'])
def test_open_spk(byteorder):
    daf = open_daf(simple_spk(byteorder=byteorder, internal_name='DE TEST EPHEMERIS'))

    assert daf.byteorder == byteorder
    assert daf.kind == 'SPK'
    assert daf.type_marker == 'S'
    assert daf.idword == 'DAF/SPK'
    assert daf.internal_name == 'DE TEST EPHEMERIS'
    assert daf.binary_format == ('LTL-IEEE' if byteorder == 'little' else 'BIG-IEEE')
    assert daf.ftp_valid is True


def test_layout_spk():
    layout = open_daf(simple_spk()).layout

    assert (layout.nd, layout.ni) == (2, 6)
    assert (layout.fward, layout.bward) == (2, 2)
    assert layout.sum_size == 40
    assert layout.nc == 40
    assert layout.name_record_offset == 1024
    assert layout.max_summaries == 25


def test_layout_bpck():
    blob = build_daf([[bpck_segment('MOON_PA', 31006)]], type_marker='P')
    daf = open_daf(blob)

    assert daf.kind == 'BPCK'
    assert daf.layout.sum_size == 36
    # Name slots are padded to whole doubles
    assert daf.layout.nc == 40


def test_layout_with_several_summary_records():
    blob = build_daf([[spk_segment('A', 1)], [spk_segment('B', 2)], [spk_segment('C', 3)]])
    layout = open_daf(blob).layout

    assert (layout.fward, layout.bward) == (2, 4)
    assert layout.name_record_offset == 3 * 1024


def test_layout_from_shape():
    layout = undaf.FileLayout.from_shape(3, 3, 5, 6, 100)

    assert layout.sum_size == 8 * 3 + 4 * 3
    assert layout.nc == 8 * (3 + 2)
    assert layout.name_record_offset == 2048
    assert layout.summary_pointer(5, 0) == 4 * 1024 + 24
    assert layout.summary_pointer(5, 2) == 4 * 1024 + 24 + 2 * 36


@pytest.mark.parametrize('nd, ni, fward, bward', [
    (-1, 6, 2, 2),
    (2, -6, 2, 2),
    (0, 0, 2, 2),
    (125, 2, 2, 2),
    (2, 6, 1, 1),
    (2, 6, 0, 0),
    (2, 6, 3, 2),
])
def test_layout_rejects_inconsistent_values(nd, ni, fward, bward):
    with pytest.raises(undaf.FormatError):
        undaf.FileLayout.from_shape(nd, ni, fward, bward)


def test_kinds():
    assert open_daf(build_daf([[ck_segment('CASSINI', -82000)]], type_marker='C')).kind == 'CK'
    assert open_daf(build_daf([[bpck_segment('EARTH', 3000)]], type_marker='P')).kind == 'BPCK'


def test_unsupported_type_marker():
    blob = simple_spk(idword=b'DAF/XYZ ')
    with pytest.raises(undaf.FormatError, match='Unsupported DAF type'):
        open_daf(blob)


def test_non_ascii_type_marker():
    blob = simple_spk(idword=b'DAF/\xd3PK ')
    with pytest.raises(undaf.FormatError, match='Unsupported DAF type') as excinfo:
        open_daf(blob)
    assert isinstance(excinfo.value.__cause__, undaf.EncodingError)


def test_non_ascii_endianness_marker():
    blob = simple_spk(locfmt=b'\xc2IG-IEEE')
    with pytest.raises(undaf.FormatError, match='endianness'):
        open_daf(blob)


def test_free_address():
    daf = open_daf(simple_spk())
    assert daf.free == daf.layout.free
    assert daf.free > 0


def test_indeterminate_endianness():
    blob = simple_spk(locfmt=b'VAX-GFLT')
    with pytest.raises(undaf.FormatError, match='endianness'):
        open_daf(blob)


def test_lowercase_endianness_markers():
    assert open_daf(simple_spk(locfmt=b'ltl-ieee')).byteorder == 'little'
    assert open_daf(simple_spk(byteorder='big', locfmt=b'big-ieee')).byteorder == 'big'


def test_explicit_byteorder_overrides_marker():
    blob = simple_spk(byteorder='big', locfmt=b'????????')
    daf = undaf.DAFFile(io.BytesIO(blob), byteorder='big')
    assert daf.read().segments[0].target_code == 399


def test_shape_too_small_for_type():
    blob = build_daf([[bpck_segment('EARTH', 3000)]], type_marker='S', nd=2, ni=5)
    with pytest.raises(undaf.FormatError, match='NI >= 6'):
        open_daf(blob)


def test_bward_before_fward():
    blob = patch_i32(simple_spk(), 80, 1)
    with pytest.raises(undaf.FormatError):
        open_daf(blob)


def test_fward_in_file_record():
    blob = patch_i32(patch_i32(simple_spk(), 76, 1), 80, 1)
    with pytest.raises(undaf.FormatError):
        open_daf(blob)


def test_first_summary_record_control_area_is_validated():
    blob = patch_f64(simple_spk(), 1024 + 16, 26.0)
    with pytest.raises(undaf.FormatError, match='26 summaries'):
        open_daf(blob)

    blob = patch_f64(simple_spk(), 1024 + 16, float('nan'))
    with pytest.raises(undaf.FormatError, match='NSUM'):
        open_daf(blob)

    blob = patch_f64(simple_spk(), 1024, -3.0)
    with pytest.raises(undaf.FormatError, match='next record'):
        open_daf(blob)


def test_truncated_file():
    blob = simple_spk()
    with pytest.raises(undaf.ReadError):
        open_daf(blob[:1030])
    with pytest.raises(undaf.ReadError):
        open_daf(blob[:50])


def test_no_comment_when_summaries_follow_file_record():
    daf = open_daf(simple_spk())
    assert daf.layout.fward == 2
    assert daf.comment() == ''


def test_comment():
    daf = open_daf(simple_spk(comment='   Test ephemeris for unit tests.   '))
    assert daf.layout.fward == 3
    assert daf.comment() == 'Test ephemeris for unit tests.'


def test_comment_lines_separated_by_nulls():
    daf = open_daf(simple_spk(comment='LINE ONE\x00LINE TWO\x00\x00'))
    assert daf.comment() == 'LINE ONELINE TWO'


def test_comment_spanning_several_records():
    text = ''.join(chr(ord('A') + i % 26) for i in range(2500))
    daf = open_daf(simple_spk(comment=text))

    assert daf.layout.fward == 5
    assert daf.comment() == text


def test_comment_stops_at_first_summary_record():
    text = 'C' * 1024
    daf = open_daf(simple_spk(comment=text, comment_eot=False))

    assert daf.layout.fward == 3
    assert daf.comment() == text


def test_header():
    daf = open_daf(simple_spk(internal_name='SPK TEST', comment='hello'))
    header = daf.header()

    assert header == undaf.DAFHeader(name='SPK TEST', comment='hello', kind='SPK')
    assert header.to_dict() == {'name': 'SPK TEST', 'comment': 'hello', 'kind': 'SPK'}


def test_ftp_string_missing():
    daf = open_daf(simple_spk(ftp=bytes(28)))
    assert daf.ftp_valid is None
    assert daf.ftpstr == ''


def test_ftp_string_damaged(caplog):
    damaged = b'FTPSTR:\r:\n:\n:\r\x00:\x81:\x10\xce:ENDFTP\x00'
    with caplog.at_level(logging.WARNING, logger='undaf'):
        daf = open_daf(simple_spk(ftp=damaged))

    assert daf.ftp_valid is False
    assert 'FTP validation string is damaged' in caplog.text


def test_ftpstr_text():
    daf = open_daf(simple_spk())
    # Control characters survive, non-ASCII bytes and nulls are dropped and
    # only the first 27 bytes are read
    assert daf.ftpstr == 'FTPSTR:\r:\n:\r\n:\r::\x10:ENDFT'


def test_file_context_manager(temp_file):
    with open(temp_file.name, 'wb') as f:
        f.write(simple_spk())

    f = undaf.File(temp_file.name)
    with f as daf:
        assert daf.kind == 'SPK'
        assert not f.file.closed
        handle = f.file

    assert handle.closed
    assert f.file is None


def test_file_context_manager_closes_on_error(temp_file):
    with open(temp_file.name, 'wb') as f:
        f.write(simple_spk(idword=b'DAF/XYZ '))

    f = undaf.File(temp_file.name)
    with pytest.raises(undaf.FormatError):
        f.open()
    assert f.file is None
    assert f.daf is None


def test_missing_file():
    with pytest.raises(OSError):
        undaf.read('/nonexistent/path/kernel.bsp')
