import logging
import os
import threading
import time

import pytest
import yaml

from llmgateway.watcher import ConfigWatcher, start_config_watcher

DEFAULT_CONFIG = {"schema": {"name": "OpenAI"}}

FIRST_CONFIG = """
schema:
  name: OpenAI
selectedBackendHeaderKey: x-ai-eg-selected-backend
modelNameHeaderKey: x-model-name
rules:
- backends:
  - name: kserve
    weight: 1
    schema:
      name: OpenAI
  - name: awsbedrock
    weight: 10
    schema:
      name: AWSBedrock
  headers:
  - name: x-model-name
    value: llama3.3333
- backends:
  - name: openai
    schema:
      name: OpenAI
  headers:
  - name: x-model-name
    value: gpt4.4444
"""

SECOND_CONFIG = """
schema:
  name: OpenAI
selectedBackendHeaderKey: x-ai-eg-selected-backend
modelNameHeaderKey: x-model-name
rules:
- backends:
  - name: openai
    schema:
      name: OpenAI
  headers:
  - name: x-model-name
    value: gpt4.4444
"""


class RecordingReceiver:
    def __init__(self):
        self.lock = threading.Lock()
        self.configs = []

    def load_config(self, config):
        with self.lock:
            self.configs.append(config)

    @property
    def count(self):
        with self.lock:
            return len(self.configs)

    @property
    def last(self):
        with self.lock:
            return self.configs[-1] if self.configs else None


def _eventually(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def _write(path, text, offset_seconds):
    path.write_text(text)
    stamp = time.time_ns() + offset_seconds * 1_000_000_000
    os.utime(path, ns=(stamp, stamp))


def test_diff(caplog):
    logger = logging.getLogger("test.watcher.diff")
    watcher = ConfigWatcher("", RecordingReceiver(), logger)
    with caplog.at_level(logging.DEBUG, logger="test.watcher.diff"):
        watcher.diff("schema:\n\tname: Foo", "schema:\n\tname: Bar")
    assert 'config line changed: line=2 path="" old="name: Foo" new="name: Bar"' in caplog.text


def test_diff_without_previous_logs_nothing(caplog):
    logger = logging.getLogger("test.watcher.diff2")
    watcher = ConfigWatcher("", RecordingReceiver(), logger)
    with caplog.at_level(logging.DEBUG, logger="test.watcher.diff2"):
        watcher.diff("", "a: 1")
    assert "config line changed" not in caplog.text


def test_diff_different_lengths(caplog):
    logger = logging.getLogger("test.watcher.diff3")
    watcher = ConfigWatcher("p", RecordingReceiver(), logger)
    with caplog.at_level(logging.DEBUG, logger="test.watcher.diff3"):
        watcher.diff("a: 1", "a: 1\nb: 2")
    assert 'line=2 path="p" old="" new="b: 2"' in caplog.text
    assert "line=1" not in caplog.text


def test_missing_file_loads_default_once(tmp_path, caplog):
    receiver = RecordingReceiver()
    watcher = ConfigWatcher(tmp_path / "config.yaml", receiver,
                            logging.getLogger("test.watcher.default"), DEFAULT_CONFIG)
    with caplog.at_level(logging.INFO, logger="test.watcher.default"):
        watcher.load_config()
        watcher.load_config()
    assert receiver.configs == [DEFAULT_CONFIG]
    assert "config file does not exist; loading default config" in caplog.text


def test_file_changes_are_loaded(tmp_path, caplog):
    path = tmp_path / "config.yaml"
    receiver = RecordingReceiver()
    logger = logging.getLogger("test.watcher.changes")
    watcher = ConfigWatcher(path, receiver, logger, DEFAULT_CONFIG)
    with caplog.at_level(logging.DEBUG, logger="test.watcher.changes"):
        watcher.load_config()
        _write(path, FIRST_CONFIG, 1)
        watcher.load_config()
        watcher.load_config()
        _write(path, SECOND_CONFIG, 2)
        watcher.load_config()
    assert receiver.count == 3
    assert receiver.configs[1] == yaml.safe_load(FIRST_CONFIG)
    assert receiver.configs[2] == yaml.safe_load(SECOND_CONFIG)
    assert "loading a new config" in caplog.text
    assert "config line changed" in caplog.text


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("rules: [unclosed")
    watcher = ConfigWatcher(path, RecordingReceiver())
    with pytest.raises(ValueError, match="cannot parse config file"):
        watcher.load_config()


def test_non_mapping_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n")
    receiver = RecordingReceiver()
    watcher = ConfigWatcher(path, receiver)
    with pytest.raises(ValueError, match="does not hold a mapping"):
        watcher.load_config()
    assert receiver.count == 0


def test_start_config_watcher_initial_failure(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("rules: [unclosed")
    stop = threading.Event()
    with pytest.raises(RuntimeError, match="failed to load initial config"):
        start_config_watcher(path, RecordingReceiver(), None, 0.05, stop)
    stop.set()


def test_start_config_watcher(tmp_path):
    path = tmp_path / "config.yaml"
    receiver = RecordingReceiver()
    stop = threading.Event()
    watcher = start_config_watcher(path, receiver, logging.getLogger("test.watcher.start"),
                                   0.05, stop, DEFAULT_CONFIG)
    try:
        assert receiver.configs == [DEFAULT_CONFIG]
        time.sleep(0.15)
        assert receiver.count == 1

        _write(path, FIRST_CONFIG, 1)
        assert _eventually(lambda: receiver.count == 2)
        assert receiver.last == yaml.safe_load(FIRST_CONFIG)

        _write(path, SECOND_CONFIG, 2)
        assert _eventually(lambda: receiver.count == 3)
        assert receiver.last == yaml.safe_load(SECOND_CONFIG)

        time.sleep(0.15)
        assert receiver.count == 3
        assert watcher.using_default is False
    finally:
        stop.set()