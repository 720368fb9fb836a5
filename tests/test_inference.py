import numpy as np
import pytest

from conftest import StubEngine

from rgbdgen.core.errors import ConfigurationError, ModelOutputError
from rgbdgen.depth.inference import check_output_shape, load_engine


def test_three_dimensional_output():
    out = np.arange(12, dtype=np.float32).reshape(1, 3, 4)
    depth = check_output_shape(out, 3, 4)
    assert depth.shape == (3, 4)
    assert depth[2, 3] == 11


def test_four_dimensional_output():
    depth = check_output_shape(np.zeros((1, 1, 3, 4), dtype=np.float64), 3, 4)
    assert depth.shape == (3, 4)
    assert depth.dtype == np.float32


@pytest.mark.parametrize("shape", [(3, 4), (1, 4, 3), (2, 3, 4), (1, 2, 3, 4)])
def test_wrong_output_shape(shape):
    with pytest.raises(ModelOutputError):
        check_output_shape(np.zeros(shape, dtype=np.float32), 3, 4)


def test_model_output_error_is_configuration_error():
    assert issubclass(ModelOutputError, ConfigurationError)


def test_missing_model_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_engine(str(tmp_path / "absent.onnx"))


def test_unsupported_model_extension(tmp_path):
    path = tmp_path / "model.bin"
    path.write_bytes(b"\x00")
    with pytest.raises(ConfigurationError):
        load_engine(str(path))


def test_corrupt_onnx_model(tmp_path):
    pytest.importorskip("onnxruntime")
    path = tmp_path / "model.onnx"
    path.write_bytes(b"not a model")
    with pytest.raises(ConfigurationError):
        load_engine(str(path), use_cuda=False)


def test_engine_tracks_inference_time():
    engine = StubEngine()
    engine.infer(np.zeros((1, 3, 14, 14), dtype=np.float32))
    assert engine.average_inference_time_ms >= 0.0
    assert len(engine._inference_times) == 1
