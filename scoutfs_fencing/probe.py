import re
import shlex
import logging

import pexpect

from scoutfs_fencing.fencing import fspawn, UNREACHABLE, REACHABLE_MOUNTED, \
	REACHABLE_UNMOUNTED, REACHABLE_AMBIGUOUS

## ssh uses 255 for its own errors, anything else is from the remote command
SSH_ERROR = 255

BEGIN_MARKER = "BEGIN"
END_MARKER = "END"

class SshChannel(object):
	"""
	Remote command channel to a cluster node.

	run() returns (exitstatus, output) where output is everything the command
	printed on stdout and stderr. exitstatus is None when the command did not
	finish in time and had to be killed.
	"""

	def __init__(self, config):
		self.config = config

	def command(self, address, remote_command):
		args = ["-o", "ConnectTimeout=%d" % self.config.ssh_timeout, "-o", "BatchMode=yes"]
		if self.config.ssh_identity_file:
			args += ["-i", self.config.ssh_identity_file]
		args += shlex.split(self.config.ssh_options)
		args += ["%s@%s" % (self.config.ssh_user, address), remote_command]
		return args

	def run(self, address, remote_command, timeout=None):
		if timeout is None:
			timeout = self.config.probe_timeout

		conn = fspawn(self.config.ssh_path, self.command(address, remote_command), timeout=timeout)
		try:
			conn.log_expect(pexpect.EOF, timeout)
		except pexpect.TIMEOUT:
			logging.warning("Remote command on %s did not finish within %d seconds", address, timeout)
			output = conn.before
			conn.close(force=True)
			return (None, output)

		output = conn.before
		conn.close()
		return (conn.exitstatus, output)

def probe_command(rid, status_path, paths):
	"""
	status_path is searched first and always holds a line starting with 0,
	its match shows that grep really ran over the status locations.
	"""
	return "echo %s; grep -H -s -e '^0' -e '%s' %s %s; echo %s" % \
		(BEGIN_MARKER, rid, status_path, " ".join(paths), END_MARKER)

def parse_transcript(output, rid, status_path, status=0):
	"""
	Decide from the output of probe_command() whether rid is still mounted.

	Anything short of a complete transcript is ambiguous, never evidence that
	the mount is gone.
	"""
	lines = [line.strip() for line in output.splitlines()]

	if BEGIN_MARKER not in lines:
		if status is None or status == SSH_ERROR:
			return UNREACHABLE
		logging.warning("Probe output has no %s marker", BEGIN_MARKER)
		return REACHABLE_AMBIGUOUS

	## grep exits 2 for an unmatched rid glob, its status is not used
	if not [line for line in lines if line.startswith(status_path + ":0")]:
		logging.warning("Probe output has no line from %s", status_path)
		return REACHABLE_AMBIGUOUS

	if END_MARKER not in lines:
		logging.warning("Probe output has no %s marker", END_MARKER)
		return REACHABLE_AMBIGUOUS

	rid_re = re.compile(r"rid:%s$" % re.escape(rid))
	for line in lines:
		if rid_re.search(line):
			logging.debug("Found mount: %s", line)
			return REACHABLE_MOUNTED

	return REACHABLE_UNMOUNTED

def probe(config, address, rid, channel=None):
	if channel is None:
		channel = SshChannel(config)

	try:
		(status, output) = channel.run(address, probe_command(rid, config.probe_status_path, config.probe_paths))
	except pexpect.ExceptionPexpect as e:
		logging.error("Unable to run remote command on %s: %s", address, e)
		return UNREACHABLE

	logging.debug("Probe of %s exited with %s: %s", address, status, output)

	result = parse_transcript(output or "", rid, config.probe_status_path, status)
	logging.info("Liveness of %s for rid %s: %s", address, rid, result)
	return result

def check_channel(config, address, channel=None):
	"""Read-only check that commands can be run on the node at all"""
	if channel is None:
		channel = SshChannel(config)

	try:
		(status, output) = channel.run(address, "echo %s" % END_MARKER)
	except pexpect.ExceptionPexpect as e:
		logging.error("Unable to run remote command on %s: %s", address, e)
		return False

	return status == 0 and END_MARKER in [line.strip() for line in (output or "").splitlines()]
