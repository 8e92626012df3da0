"""
Command-line tests

These run the tool as a subprocess, the way it is used from a shell, and
need no QR scanning libraries: fragments come from reports.
"""

import os
import sys
import json
import subprocess
import tempfile
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import tardoc_qr as tq
from tests.pdf_helpers import make_invoice_xml, shuffled, get_pdf_page_count

SCRIPT = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'tardoc_qr.py')


def run_cli(*args):
    env = dict(os.environ, PYTHONIOENCODING='utf-8')
    return subprocess.run([sys.executable, SCRIPT] + list(args),
                          capture_output=True, text=True, encoding='utf-8', env=env)


def write_report(directory, fragments, name='fragments.json'):
    path = os.path.join(directory, name)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(tq.fragment_report(fragments))
    return path


def read(path):
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


class TestReassembleCommand:
    """Tests for the reassemble command"""

    def test_addressed_report(self):
        xml = make_invoice_xml()
        series = shuffled(tq.build_series(xml, count=5), 2)

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series)
            output = os.path.join(tmpdir, 'invoice.xml')

            result = run_cli('reassemble', report, '-o', output)

            assert result.returncode == 0, f"Reassemble failed: {result.stderr}"
            assert read(output) == xml
            assert '(exact)' in result.stdout

    def test_default_output_and_base64(self):
        xml = make_invoice_xml()
        series = tq.build_series(xml, count=2)

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series, 'scan.json')

            result = run_cli('reassemble', report, '--keep-base64')

            assert result.returncode == 0, f"Reassemble failed: {result.stderr}"
            assert read(os.path.join(tmpdir, 'scan.xml')) == xml
            assert read(os.path.join(tmpdir, 'scan.base64')) == tq.compress_markup(xml)

    def test_zbarimg_report(self):
        xml = make_invoice_xml()
        series = shuffled(tq.build_series(xml, count=3), 4)

        with tempfile.TemporaryDirectory() as tmpdir:
            report = os.path.join(tmpdir, 'scan.txt')
            with open(report, 'w', encoding='utf-8') as f:
                for fragment in series:
                    f.write(f"QR-Code:{fragment.payload}\n")
                f.write("scanned 3 barcode symbols from 1 images\n")
            output = os.path.join(tmpdir, 'invoice.xml')

            result = run_cli('reassemble', report, '--format', 'zbarimg', '-o', output)

            assert result.returncode == 0, f"Reassemble failed: {result.stderr}"
            assert read(output) == xml
            assert '(heuristic)' in result.stdout
            assert 'Valid order' in result.stdout

    def test_failure_without_recovery_mode(self):
        series = tq.build_series(make_invoice_xml(), count=4)
        del series[1]

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series)
            output = os.path.join(tmpdir, 'invoice.xml')

            result = run_cli('reassemble', report, '-o', output)

            assert result.returncode == 1
            assert 'Missing sequence(s): [1]' in result.stderr
            assert '--recovery-mode' in result.stderr
            assert not os.path.exists(output)
            assert not os.path.exists(os.path.join(tmpdir, 'invoice.base64'))

    def test_failure_with_recovery_mode(self):
        """Test the unvalidated payload is saved, never the XML"""
        series = tq.build_series(make_invoice_xml(), count=4)
        del series[1]

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series)
            output = os.path.join(tmpdir, 'invoice.xml')

            result = run_cli('reassemble', report, '-o', output, '--recovery-mode')

            assert result.returncode == 1
            assert 'UNVALIDATED' in result.stderr
            assert not os.path.exists(output)
            saved = read(os.path.join(tmpdir, 'invoice.base64'))
            assert saved == tq.strip_padding(series[0].payload + series[1].payload + series[2].payload)

    def test_refuses_overwrite(self):
        series = tq.build_series(make_invoice_xml(), count=2)

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series)
            output = os.path.join(tmpdir, 'invoice.xml')
            with open(output, 'w') as f:
                f.write('keep me')

            result = run_cli('reassemble', report, '-o', output)
            assert result.returncode != 0
            assert '--force' in result.stderr
            assert read(output) == 'keep me'

            result = run_cli('reassemble', report, '-o', output, '--force')
            assert result.returncode == 0, f"Reassemble failed: {result.stderr}"
            assert read(output) != 'keep me'

    def test_recovery_mode_refuses_to_replace_base64(self):
        """Test an earlier .base64 file is kept unless --force is given"""
        series = tq.build_series(make_invoice_xml(), count=4)
        del series[1]

        with tempfile.TemporaryDirectory() as tmpdir:
            report = write_report(tmpdir, series)
            output = os.path.join(tmpdir, 'invoice.xml')
            base64_path = os.path.join(tmpdir, 'invoice.base64')
            with open(base64_path, 'w') as f:
                f.write('earlier payload')

            result = run_cli('reassemble', report, '-o', output, '--recovery-mode')
            assert result.returncode != 0
            assert '--force' in result.stderr
            assert read(base64_path) == 'earlier payload'

            result = run_cli('reassemble', report, '-o', output, '--recovery-mode', '--force')
            assert result.returncode == 1
            assert 'UNVALIDATED' in result.stderr
            assert read(base64_path) != 'earlier payload'

    def test_bad_report(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            report = os.path.join(tmpdir, 'bad.json')
            with open(report, 'w') as f:
                json.dump({'payload': 'QUJD'}, f)

            result = run_cli('reassemble', report)

            assert result.returncode == 1
            assert 'Error' in result.stderr


class TestInflateCommand:
    """Tests for the inflate command"""

    def test_inflate_base64_file(self):
        xml = make_invoice_xml()

        with tempfile.TemporaryDirectory() as tmpdir:
            source = os.path.join(tmpdir, 'invoice.base64')
            with open(source, 'w') as f:
                f.write(tq.compress_markup(xml) + '   \n')

            result = run_cli('inflate', source)

            assert result.returncode == 0, f"Inflate failed: {result.stderr}"
            assert read(os.path.join(tmpdir, 'invoice.xml')) == xml
            assert 'Content type: XML' in result.stdout

    def test_inflate_invalid(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = os.path.join(tmpdir, 'junk.base64')
            with open(source, 'w') as f:
                f.write('abc!@#')

            result = run_cli('inflate', source)

            assert result.returncode == 1
            assert 'Invalid base64' in result.stderr
            assert not os.path.exists(os.path.join(tmpdir, 'junk.xml'))


class TestEncodeCommand:
    """Tests for the encode command"""

    def test_encode_pdf(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            xml_file = os.path.join(tmpdir, 'invoice.xml')
            with open(xml_file, 'w', encoding='utf-8') as f:
                f.write(make_invoice_xml())
            pdf_file = os.path.join(tmpdir, 'invoice.pdf')

            result = run_cli('encode', xml_file, '-o', pdf_file, '--fragments', '3')

            assert result.returncode == 0, f"Encode failed: {result.stderr}"
            assert 'QR codes required: 3' in result.stdout
            assert get_pdf_page_count(pdf_file) >= 1

    def test_quiet(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            xml_file = os.path.join(tmpdir, 'invoice.xml')
            with open(xml_file, 'w', encoding='utf-8') as f:
                f.write(make_invoice_xml(5))

            result = run_cli('--quiet', 'encode', xml_file)

            assert result.returncode == 0, f"Encode failed: {result.stderr}"
            assert 'QR codes required' not in result.stdout
            assert os.path.exists(xml_file + '.qr.pdf')


def test_version():
    result = run_cli('--version')
    assert result.returncode == 0
    assert tq.VERSION in result.stdout


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
