import json
import os
import tempfile
import unittest

from dict_config import DEFAULTS, load_config, validate
from dict_server import load_server_config


class TestClientConfig(unittest.TestCase):
    def setUp(self):
        fd, path = tempfile.mkstemp(prefix='dictcfg_', suffix='.json')
        os.close(fd)
        self.path = path

    def tearDown(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def write(self, data):
        with open(self.path, 'w', encoding='utf-8') as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)

    def test_defaults(self):
        cfg = load_config(None, env={})
        self.assertEqual(cfg, DEFAULTS)
        self.assertEqual(cfg['port'], 2628)

    def test_file_then_env(self):
        self.write({'host': 'dict.example', 'port': 2629, 'database': 'wn', 'unknown_key': 1})
        cfg = load_config(self.path, env={'DICT_PORT': '3000', 'DICT_STRATEGY': 'prefix', 'DICT_HOST': ''})
        self.assertEqual(cfg['host'], 'dict.example')
        self.assertEqual(cfg['port'], 3000)
        self.assertEqual(cfg['database'], 'wn')
        self.assertEqual(cfg['strategy'], 'prefix')
        self.assertNotIn('unknown_key', cfg)

    def test_bad_file_is_ignored(self):
        self.write('{not json')
        self.assertEqual(load_config(self.path, env={}), DEFAULTS)
        self.write('[1, 2]')
        self.assertEqual(load_config(self.path, env={}), DEFAULTS)
        self.assertEqual(load_config(self.path + '.missing', env={}), DEFAULTS)

    def test_clamping(self):
        cfg = validate({'port': 99999, 'timeout': 0, 'host': '  ', 'log_level': 'LOUD'})
        self.assertEqual(cfg['port'], 65535)
        self.assertEqual(cfg['timeout'], 0.1)
        self.assertEqual(cfg['host'], DEFAULTS['host'])
        self.assertEqual(cfg['log_level'], 'warning')
        cfg = validate({'port': 'abc', 'timeout': 'slow', 'log_level': 'DEBUG'})
        self.assertEqual(cfg['port'], 2628)
        self.assertEqual(cfg['timeout'], DEFAULTS['timeout'])
        self.assertEqual(cfg['log_level'], 'debug')

    def test_unknown_encoding_falls_back(self):
        cfg = load_config(None, env={'DICT_ENCODING': 'no-such-codec'})
        self.assertEqual(cfg['encoding'], 'utf-8')
        self.assertEqual(validate({'encoding': 'latin-1'})['encoding'], 'latin-1')


class TestServerConfig(unittest.TestCase):
    def test_env_overrides_and_clamps(self):
        cfg = load_server_config(None, env={
            'DICT_SERVER_MAX_WORKERS': '0',
            'DICT_SERVER_REQUEST_TIMEOUT': '2.5',
            'DICT_SERVER_MAX_LINE_LENGTH': 'x',
        })
        self.assertEqual(cfg['max_workers'], 1)
        self.assertEqual(cfg['request_timeout'], 2.5)
        self.assertEqual(cfg['max_line_length'], 1024)
        self.assertEqual(cfg['max_concurrent_connections'], 1000)


if __name__ == '__main__':
    unittest.main()
