#!/usr/bin/python3

import unittest

from scoutfs_fencing.agents import powerman
from scoutfs_fencing.config import FenceConfig, RedundantProxyBinding
from scoutfs_fencing.fencing import FenceOutcome, NO_SERVER_CONFIRMED

class FakePowerman(object):
	"""
	Stands in for both pm and the TCP check. answers maps a server name to
	the pm --query output it gives, servers missing from up are unreachable.
	"""

	def __init__(self, up, answers):
		self.up = up
		self.answers = answers
		self.commands = []
		self.connects = []

	def reachable(self, host, port, timeout):
		self.connects.append((host, port))
		return host in self.up

	def runner(self, command, timeout=None, log_command=None):
		self.commands.append(command)
		server = command.split("--server-host ")[1].split(":")[0]
		if "--off " in command:
			return (0, "Command completed successfully\n", "")
		return (0, self.answers[server], "")

	def servers_used(self, option):
		return [c.split("--server-host ")[1].split(":")[0] for c in self.commands if option in c]

class Test_expand_hostlist(unittest.TestCase):
	def test_plain(self):
		self.assertEqual(powerman.expand_hostlist("radia2"), ["radia2"])

	def test_range(self):
		self.assertEqual(powerman.expand_hostlist("radia[1-3,7]"), ["radia1", "radia2", "radia3", "radia7"])

	def test_list(self):
		self.assertEqual(powerman.expand_hostlist("radia[1-2],tapeb"), ["radia1", "radia2", "tapeb"])

	def test_padding(self):
		self.assertEqual(powerman.expand_hostlist("n[08-10]"), ["n08", "n09", "n10"])

	def test_suffix(self):
		self.assertEqual(powerman.expand_hostlist("rack[1-2]-bmc"), ["rack1-bmc", "rack2-bmc"])

	def test_empty(self):
		self.assertEqual(powerman.expand_hostlist(""), [])

class Test_is_off(unittest.TestCase):
	def test_range_match(self):
		self.assertTrue(powerman.is_off("on:      \noff:     radia[1-5]\nunknown: \n", "radia2"))

	def test_on(self):
		self.assertFalse(powerman.is_off("on:      radia2\noff:     \nunknown: \n", "radia2"))

	def test_other_node(self):
		self.assertFalse(powerman.is_off("off:     radia21\n", "radia2"))

	def test_metacharacters(self):
		## "node.1" as a pattern would match "nodex1"
		self.assertFalse(powerman.is_off("off:     nodex1\n", "node.1"))
		self.assertTrue(powerman.is_off("off:     node.1\n", "node.1"))
		self.assertFalse(powerman.is_off("off:     radia1\n", "radia.*"))

	def test_not_an_off_line(self):
		self.assertFalse(powerman.is_off("No such nodes: radia2\n", "radia2"))

class Test_power_off(unittest.TestCase):
	def setUp(self):
		self.config = FenceConfig({"status_retries" : "2", "status_wait" : "1"})
		self.binding = RedundantProxyBinding("10.0.0.102", [("v1", 10101), ("172.21.1.51", 10101)], "radia2")
		self.sleeps = []

	def power_off(self, fake):
		return powerman.power_off(self.config, self.binding, runner=fake.runner,
			reachable=fake.reachable, sleep=self.sleeps.append)

	def test_failover_to_reachable_server(self):
		fake = FakePowerman(["172.21.1.51"], {"172.21.1.51" : "on:\noff: radia[1-5]\nunknown:\n"})
		self.assertEqual(self.power_off(fake), FenceOutcome.confirmed())
		self.assertEqual(fake.connects, [("v1", 10101), ("172.21.1.51", 10101)])
		self.assertEqual(fake.servers_used("--off"), ["172.21.1.51"])

	def test_first_server_confirms(self):
		fake = FakePowerman(["v1", "172.21.1.51"], {"v1" : "off: radia2\n"})
		self.assertEqual(self.power_off(fake), FenceOutcome.confirmed())
		self.assertEqual(fake.servers_used("--off"), ["v1"])
		self.assertEqual(fake.connects, [("v1", 10101)])

	def test_unconfirmed_server_moves_on(self):
		fake = FakePowerman(["v1", "172.21.1.51"], {
			"v1" : "on: radia2\noff:\n",
			"172.21.1.51" : "off: radia2\n"})
		self.assertEqual(self.power_off(fake), FenceOutcome.confirmed())
		self.assertEqual(fake.servers_used("--off"), ["v1", "172.21.1.51"])
		self.assertEqual(fake.servers_used("--query"), ["v1", "v1", "172.21.1.51"])
		self.assertEqual(self.sleeps, [1])

	def test_no_server_confirms(self):
		fake = FakePowerman(["v1", "172.21.1.51"], {
			"v1" : "on: radia2\n",
			"172.21.1.51" : "off: radia.2\n"})
		outcome = self.power_off(fake)
		self.assertEqual(outcome, FenceOutcome.failed(NO_SERVER_CONFIRMED))
		self.assertEqual(outcome.message, "powerman stat radia2 not off")

	def test_no_server_reachable(self):
		fake = FakePowerman([], {})
		self.assertEqual(self.power_off(fake), FenceOutcome.failed(NO_SERVER_CONFIRMED))
		self.assertEqual(fake.commands, [])

	def test_server_port(self):
		binding = RedundantProxyBinding("10.0.0.103", [("pm1", 10200)], "radia3")
		fake = FakePowerman(["pm1"], {"pm1" : "off: radia3\n"})
		powerman.power_off(self.config, binding, runner=fake.runner, reachable=fake.reachable,
			sleep=self.sleeps.append)
		self.assertIn("--server-host pm1:10200 --off radia3", fake.commands[0])

class Test_status(unittest.TestCase):
	def test_each_server(self):
		conf = FenceConfig()
		binding = RedundantProxyBinding("10.0.0.102", [("v1", 10101), ("v2", 10101)], "radia2")
		fake = FakePowerman(["v2"], {"v2" : "on: radia2\n"})
		self.assertEqual(powerman.status(conf, binding, "v1", 10101, fake.runner, fake.reachable),
			(False, "unreachable"))
		(passed, _) = powerman.status(conf, binding, "v2", 10101, fake.runner, fake.reachable)
		self.assertTrue(passed)
		self.assertEqual(fake.servers_used("--off"), [])

if __name__ == '__main__':
	unittest.main()
