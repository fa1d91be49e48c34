"""Tests for key-addressed fit-result stores."""

import arviz as az
import pytest
from numpy.testing import assert_array_equal

from salmon_ipm.errors import CacheCorruptionError
from salmon_ipm.inference.store import MemoryResultStore, NetCDFResultStore

from conftest import make_idata


@pytest.fixture
def idata():
    return make_idata(n_esc=5, n_age=5, draws=20)


class TestNetCDFResultStore:

    def test_roundtrip(self, tmp_path, idata) -> None:
        store = NetCDFResultStore(tmp_path / "fits")
        assert not store.has("baseline")
        store.put("baseline", idata)
        assert store.has("baseline")
        loaded = store.get("baseline")
        assert_array_equal(loaded.posterior["alpha"].values, idata.posterior["alpha"].values)
        assert_array_equal(
            loaded.log_likelihood["esc_obs"].values, idata.log_likelihood["esc_obs"].values
        )

    def test_no_temporary_files_left(self, tmp_path, idata) -> None:
        store = NetCDFResultStore(tmp_path)
        store.put("baseline", idata)
        assert [p.name for p in tmp_path.iterdir()] == ["baseline.nc"]

    def test_missing_key(self, tmp_path) -> None:
        with pytest.raises(KeyError):
            NetCDFResultStore(tmp_path).get("nothing")

    def test_corrupt_file(self, tmp_path) -> None:
        store = NetCDFResultStore(tmp_path)
        store.path_for("baseline").write_bytes(b"not a netcdf file")
        assert store.has("baseline")
        with pytest.raises(CacheCorruptionError):
            store.get("baseline")

    def test_interrupted_write_leaves_nothing(self, tmp_path, idata, monkeypatch) -> None:
        def partial_write(self, filename, *args, **kwargs):
            with open(filename, "wb") as f:
                f.write(b"\x89HDF partial")
            raise KeyboardInterrupt

        monkeypatch.setattr(az.InferenceData, "to_netcdf", partial_write)
        store = NetCDFResultStore(tmp_path)
        with pytest.raises(KeyboardInterrupt):
            store.put("baseline", idata)
        assert not store.has("baseline")
        assert list(tmp_path.iterdir()) == []

    def test_keys_sanitized(self, tmp_path) -> None:
        store = NetCDFResultStore(tmp_path)
        assert store.path_for("flow/max lag1").name == "flow_max_lag1.nc"

    def test_discard(self, tmp_path, idata) -> None:
        store = NetCDFResultStore(tmp_path)
        store.put("baseline", idata)
        store.discard("baseline")
        assert not store.has("baseline")
        store.discard("baseline")


class TestMemoryResultStore:

    def test_roundtrip(self, idata) -> None:
        store = MemoryResultStore()
        store.put("k", idata)
        assert store.has("k")
        assert store.get("k") is idata
        assert len(store) == 1

    def test_missing_key(self) -> None:
        with pytest.raises(KeyError):
            MemoryResultStore().get("k")
