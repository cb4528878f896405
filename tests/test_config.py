#!/usr/bin/python3

import os
import shutil
import tempfile
import unittest

from scoutfs_fencing import config
from scoutfs_fencing.fencing import ConfigError, DIRECT_POWER, REDUNDANT_PROXY, VIRTUALIZED_HOST

HOSTS = """
# node          kind              backend address
10.0.0.101      ipmi              10.0.1.101
10.0.0.102      powerman          v1,172.21.1.51:radia2
10.0.0.103      redundant-proxy   pm1:10200,pm2:radia3
10.0.0.200      vmware            vcenter.example.com:vm-1042

10.0.0.104      direct-power      bmc-104
"""

class ConfigTestCase(unittest.TestCase):
	def setUp(self):
		self.dir = tempfile.mkdtemp()

	def tearDown(self):
		shutil.rmtree(self.dir)

	def write(self, name, text):
		path = os.path.join(self.dir, name)
		with open(path, "w") as f:
			f.write(text)
		return path

class Test_load_config(ConfigTestCase):
	def test_defaults(self):
		conf = config.FenceConfig()
		self.assertEqual(conf.status_retries, 5)
		self.assertEqual(conf.powerman_port, 10101)
		self.assertTrue(conf.ipmi_lanplus)
		self.assertFalse(conf.vsphere_ssl_insecure)
		self.assertEqual(conf.probe_paths, ["/sys/fs/scoutfs/*/rid"])
		self.assertEqual(conf.probe_status_path, "/sys/kernel/boot_params/version")

	def test_values(self):
		path = self.write("fence.conf", "\n".join([
			"# tunables",
			"status_retries = 3",
			"status_wait=1",
			"ipmi_user = \"admin\"",
			"ipmi_lanplus = no",
			"ssh_options = -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null",
			"probe_paths = /sys/fs/scoutfs/*/rid /sys/kernel/debug/scoutfs/*/rid",
			""]))
		conf = config.load_config(path)
		self.assertEqual(conf.status_retries, 3)
		self.assertEqual(conf.status_wait, 1)
		self.assertEqual(conf.ipmi_user, "admin")
		self.assertFalse(conf.ipmi_lanplus)
		self.assertEqual(conf.ssh_options, "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null")
		self.assertEqual(len(conf.probe_paths), 2)
		self.assertEqual(conf.source, path)

	def test_invalid_integer(self):
		path = self.write("fence.conf", "status_retries = many\n")
		self.assertRaises(ConfigError, config.load_config, path)

	def test_zero_retries(self):
		path = self.write("fence.conf", "status_retries = 0\n")
		self.assertRaises(ConfigError, config.load_config, path)

	def test_missing_explicit_file(self):
		self.assertRaises(ConfigError, config.load_config, os.path.join(self.dir, "missing.conf"))

	def test_unknown_key_is_ignored(self):
		path = self.write("fence.conf", "no_such_key = 1\n")
		conf = config.load_config(path)
		self.assertFalse(hasattr(conf, "no_such_key"))

class Test_load_hosts(ConfigTestCase):
	def setUp(self):
		ConfigTestCase.setUp(self)
		self.config = config.FenceConfig()

	def test_bindings(self):
		bindings = config.load_hosts(self.write("hosts", HOSTS), self.config)
		self.assertEqual(list(bindings.keys()),
			["10.0.0.101", "10.0.0.102", "10.0.0.103", "10.0.0.200", "10.0.0.104"])

		self.assertEqual(bindings["10.0.0.101"].kind, DIRECT_POWER)
		self.assertEqual(bindings["10.0.0.101"].bmc, "10.0.1.101")

		proxy = bindings["10.0.0.102"]
		self.assertEqual(proxy.kind, REDUNDANT_PROXY)
		self.assertEqual(proxy.servers, [("v1", 10101), ("172.21.1.51", 10101)])
		self.assertEqual(proxy.node, "radia2")

		self.assertEqual(bindings["10.0.0.103"].servers, [("pm1", 10200), ("pm2", 10101)])

		vm = bindings["10.0.0.200"]
		self.assertEqual(vm.kind, VIRTUALIZED_HOST)
		self.assertEqual(vm.api_host, "vcenter.example.com")
		self.assertEqual(vm.guest_id, "vm-1042")

		self.assertEqual(bindings["10.0.0.104"].kind, DIRECT_POWER)

	def test_unknown_kind(self):
		path = self.write("hosts", "10.0.0.1 apc 10.0.1.1\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_duplicate_address(self):
		path = self.write("hosts", "10.0.0.1 ipmi bmc1\n10.0.0.1 ipmi bmc2\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_missing_field(self):
		path = self.write("hosts", "10.0.0.1 ipmi\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_proxy_without_node(self):
		path = self.write("hosts", "10.0.0.1 powerman v1,v2\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_proxy_empty_server(self):
		path = self.write("hosts", "10.0.0.1 powerman v1,,v2:radia1\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_vmware_without_guest(self):
		path = self.write("hosts", "10.0.0.1 vmware vcenter:\n")
		self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_vmware_port(self):
		path = self.write("hosts", "10.0.0.1 vmware vc:8443:vm-1\n10.0.0.2 vmware vc:vm-2\n")
		bindings = config.load_hosts(path, self.config)
		self.assertEqual((bindings["10.0.0.1"].api_host, bindings["10.0.0.1"].api_port), ("vc", 8443))
		self.assertEqual(bindings["10.0.0.1"].guest_id, "vm-1")
		self.assertIsNone(bindings["10.0.0.2"].api_port)

	def test_vmware_bad_port(self):
		for entry in ["vc:https:vm-1", "vc:8443:x:vm-1", ":8443:vm-1"]:
			path = self.write("hosts", "10.0.0.1 vmware %s\n" % entry)
			self.assertRaises(ConfigError, config.load_hosts, path, self.config)

	def test_missing_file(self):
		self.assertRaises(ConfigError, config.load_hosts, os.path.join(self.dir, "missing"), self.config)

	def test_error_names_line(self):
		path = self.write("hosts", "# comment\n\n10.0.0.1 ipmi bmc1 extra\n")
		try:
			config.load_hosts(path, self.config)
		except ConfigError as e:
			self.assertIn(path + ":3", str(e))
		else:
			self.fail("ConfigError not raised")

if __name__ == '__main__':
	unittest.main()
