import logging

from scoutfs_fencing import probe as liveness
from scoutfs_fencing.agents import ipmi, powerman, vmware
from scoutfs_fencing.fencing import DIRECT_POWER, REDUNDANT_PROXY, VIRTUALIZED_HOST

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"

class Report(object):
	def __init__(self, out=print):
		self.out = out
		self.results = []

	def add(self, result, address, check, detail=""):
		self.results.append((result, address, check))
		line = "%s %s %s" % (result, address, check)
		if detail:
			line += " (%s)" % detail
		self.out(line)
		if result == FAIL:
			logging.error("Self test: %s", line)
		else:
			logging.debug("Self test: %s", line)

	def count(self, result):
		return len([r for r in self.results if r[0] == result])

def test_all(config, bindings, report=None, channel_check=liveness.check_channel,
		ipmi_status=ipmi.status, powerman_status=powerman.status, vmware_status=vmware.status):
	"""
	Check every configured node without fencing anything: the ssh channel
	the liveness probe needs, then the read-only status query of its backend.

	Returns the number of failed checks.
	"""
	if report is None:
		report = Report()

	vmware_login_failed = False

	for (address, binding) in bindings.items():
		if channel_check(config, address):
			report.add(PASS, address, "ssh")
		else:
			report.add(FAIL, address, "ssh")

		if binding.kind == DIRECT_POWER:
			(passed, detail) = ipmi_status(config, binding)
			report.add(PASS if passed else FAIL, address, "ipmi " + binding.bmc, detail)

		elif binding.kind == REDUNDANT_PROXY:
			for (server, port) in binding.servers:
				(passed, detail) = powerman_status(config, binding, server, port)
				report.add(PASS if passed else FAIL, address, "powerman %s:%s" % (server, port), detail)

		elif binding.kind == VIRTUALIZED_HOST:
			check = "vmware %s" % binding.api_host
			## do not lock the account by retrying a login that already failed
			if vmware_login_failed:
				report.add(SKIP, address, check, "earlier vmware login failed")
				continue
			(passed, detail, logged_in) = vmware_status(config, binding)
			report.add(PASS if passed else FAIL, address, check, detail)
			if not logged_in:
				vmware_login_failed = True

	failures = report.count(FAIL)
	report.out("%d passed, %d failed, %d skipped" % (report.count(PASS), failures, report.count(SKIP)))
	return failures
