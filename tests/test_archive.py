import zipfile

import pytest

from apksurgeon import archive
from apksurgeon.errors import EntryNotFound, IOFailure

from conftest import make_apk


@pytest.fixture
def apk(tmp_path):
    return make_apk(tmp_path / "app.apk", [
        ("AndroidManifest.xml", b"<manifest/>"),
        ("classes.dex", b"dex-one", zipfile.ZIP_STORED),
        ("res/raw/blob.bin", bytes(range(256)) * 64),
        ("META-INF/CERT.SF", b"sig"),
    ])


def test_list_entries_in_order(apk):
    assert archive.list_entries(apk) == [
        "AndroidManifest.xml", "classes.dex", "res/raw/blob.bin", "META-INF/CERT.SF"]


def test_entries_metadata(apk):
    by_name = {e.name: e for e in archive.entries(apk)}
    assert by_name["classes.dex"].stored
    assert by_name["classes.dex"].size == len(b"dex-one")
    assert not by_name["res/raw/blob.bin"].stored
    assert by_name["res/raw/blob.bin"].size == 256 * 64


def test_extract_exact_bytes(apk, tmp_path):
    dest = tmp_path / "blob.bin"
    assert archive.extract(apk, "res/raw/blob.bin", dest) == 256 * 64
    assert dest.read_bytes() == bytes(range(256)) * 64


def test_extract_missing_entry(apk, tmp_path):
    with pytest.raises(EntryNotFound):
        archive.extract(apk, "classes9.dex", tmp_path / "x.dex")
    assert not (tmp_path / "x.dex").exists()


def test_extract_unwritable_destination(apk, tmp_path):
    with pytest.raises(IOFailure):
        archive.extract(apk, "classes.dex", tmp_path / "missing-dir" / "classes.dex")


def test_not_a_zip(tmp_path):
    bogus = tmp_path / "bogus.apk"
    bogus.write_bytes(b"definitely not a zip")
    with pytest.raises(IOFailure):
        archive.list_entries(bogus)


def test_missing_archive(tmp_path):
    with pytest.raises(IOFailure):
        archive.list_entries(tmp_path / "nope.apk")


@pytest.mark.parametrize("name", [
    "META-INF/MANIFEST.MF",
    "META-INF/manifest.mf",
    "META-INF/CERT.SF",
    "META-INF/CERT.RSA",
    "META-INF/KEY.dsa",
    "META-INF/A.EC",
    "META-INF/SIG-ANDROID",
])
def test_signing_metadata(name):
    assert archive.is_signing_metadata(name)


@pytest.mark.parametrize("name", [
    "META-INF/services/com.example.Service",
    "META-INF/com/android/build/gradle/app-metadata.properties",
    "META-INF/androidx.core_core.version",
    "META-INF/sub/CERT.RSA",
    "assets/META-INF/CERT.SF",
    "classes.dex",
])
def test_not_signing_metadata(name):
    assert not archive.is_signing_metadata(name)
