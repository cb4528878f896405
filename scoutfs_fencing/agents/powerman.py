import re
import time
import socket
import logging
from shlex import quote

from scoutfs_fencing.fencing import FenceOutcome, run_command, is_executable, \
	NO_SERVER_CONFIRMED, BAD_CONFIG

OFF_RE = re.compile(r"^off:\s*(.*)$")
RANGE_RE = re.compile(r"^([^\[]*)\[([^\]]*)\](.*)$")

class PowerMan:
	"""Python wrapper for calling powerman commands

	This class makes calls to a powerman daemon for a cluster of computers.
	The make-up of such a call looks something like:
		$ pm --server-host elssd1:10101 <option> <node>
	where option is something like --off or --query and where node is
	elssd8, or whatever values are setup in powerman.conf.
	"""

	def __init__(self, powerman_path, server_name, port, runner=run_command, timeout=None):
		self.powerman_path = powerman_path
		self.server_name = server_name
		self.port = port
		self.server_and_port = server_name + ":" + str(port)
		self.runner = runner
		self.timeout = timeout
		self.base_cmd = "%s --server-host %s" % (self.powerman_path, quote(self.server_and_port))

	def _run(self, cmd):
		return self.runner(self.base_cmd + " " + cmd, timeout=self.timeout)

	## Some devices respond to off as if it was successful when it was not,
	## so the return code of off() is only logged and query() decides.

	def off(self, host):
		(ret_code, out, err) = self._run("--off " + quote(host))
		logging.debug("pm.off %s result: %s ret_code: %s", host, out.strip(), ret_code)
		if ret_code != 0:
			logging.warning("powerman off %s via %s failed (%s): %s", host, self.server_and_port,
					ret_code, err.strip())
		return ret_code

	def query(self, host):
		(ret_code, out, err) = self._run("--query " + quote(host))
		logging.debug("pm.query %s result: %s ret_code: %s", host, out.strip(), ret_code)
		return (ret_code, out)

def expand_hostlist(hostlist):
	"""
	Expand a powerman/pdsh style host list such as "radia[1-3,7],tapeb"
	into ["radia1", "radia2", "radia3", "radia7", "tapeb"].
	"""
	hosts = []
	for entry in _split_top_level(hostlist.strip()):
		if not entry:
			continue
		hosts.extend(_expand_entry(entry))
	return hosts

def _split_top_level(text):
	entries = []
	depth = 0
	current = ""
	for char in text:
		if char == "[":
			depth += 1
		elif char == "]":
			depth -= 1
		if char in ", " and depth == 0:
			entries.append(current)
			current = ""
		else:
			current += char
	entries.append(current)
	return entries

def _expand_entry(entry):
	match = RANGE_RE.match(entry)
	if match is None:
		return [entry]

	(prefix, ranges, suffix) = match.groups()
	heads = []
	for part in ranges.split(","):
		(low, sep, high) = part.partition("-")
		if sep and low.isdigit() and high.isdigit():
			## keep zero padding, radia[08-10] is radia08 radia09 radia10
			width = len(low) if low.startswith("0") else 0
			for number in range(int(low), int(high) + 1):
				heads.append("%s%0*d" % (prefix, width, number))
		else:
			heads.append(prefix + part)

	## the suffix may hold another bracketed range
	return [head + tail for head in heads for tail in _expand_entry(suffix)]

def is_off(output, node):
	"""
	True only if an "off:" line of pm --query output names exactly node.

	Node names are compared as literal strings, never as patterns.
	"""
	for line in output.splitlines():
		match = OFF_RE.match(line.strip())
		if match and node in expand_hostlist(match.group(1)):
			return True
	return False

def tcp_reachable(host, port, timeout):
	try:
		sock = socket.create_connection((host, port), timeout)
	except (socket.error, socket.timeout) as e:
		logging.debug("Connect to %s:%s failed: %s", host, port, e)
		return False
	sock.close()
	return True

def validate(config, binding):
	if not is_executable(config.powerman_path):
		return FenceOutcome.failed(BAD_CONFIG, "Powerman not found or not executable at path " + config.powerman_path)
	return None

def power_off(config, binding, runner=run_command, reachable=tcp_reachable, sleep=time.sleep):
	node = binding.node
	attempted = []

	for (server, port) in binding.servers:
		if not reachable(server, port, config.connect_timeout):
			logging.warning("powerman server %s:%s is unreachable, skipping", server, port)
			continue

		logging.info("powerman off %s via %s:%s", node, server, port)
		pm = PowerMan(config.powerman_path, server, port, runner, config.power_timeout)
		pm.off(node)
		attempted.append(server)

		for attempt in range(1, config.status_retries + 1):
			(ret_code, out) = pm.query(node)
			if ret_code == 0 and is_off(out, node):
				logging.info("powerman stat %s off via %s:%s", node, server, port)
				return FenceOutcome.confirmed()
			if attempt < config.status_retries:
				sleep(config.status_wait)

		logging.warning("powerman stat %s not off via %s:%s", node, server, port)

	if not attempted:
		logging.error("powerman stat %s not off, no powerman server was reachable", node)
	else:
		logging.error("powerman stat %s not off, tried %s", node, ", ".join(attempted))
	return FenceOutcome.failed(NO_SERVER_CONFIRMED, "powerman stat %s not off" % node)

def status(config, binding, server, port, runner=run_command, reachable=tcp_reachable):
	"""Read-only check of one powerman server, returns (passed, detail)"""
	if not reachable(server, port, config.connect_timeout):
		return (False, "unreachable")

	pm = PowerMan(config.powerman_path, server, port, runner, config.power_timeout)
	(ret_code, out) = pm.query(binding.node)
	if ret_code != 0:
		return (False, "pm --query %s failed (%s)" % (binding.node, ret_code))
	return (True, " ".join(out.split()))
