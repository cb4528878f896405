import re
import time
import logging
from shlex import quote

from scoutfs_fencing.fencing import FenceOutcome, run_command, is_executable, \
	COMMAND_ERROR, NOT_CONFIRMED_OFF, BAD_CONFIG

STATUS_RE = re.compile('[Cc]hassis [Pp]ower is [\\s]*([a-zA-Z]{2,3})')

def create_command(config, bmc, action):
	class Cmd:
		cmd = ""
		log = ""

		@classmethod
		def append(cls, cmd, log=None):
			cls.cmd += cmd
			cls.log += (cmd if log is None else log)

	Cmd.append(config.ipmitool_path)

	if config.ipmi_lanplus:
		Cmd.append(" -I lanplus")
	else:
		Cmd.append(" -I lan")

	Cmd.append(" -H " + quote(bmc))

	if config.ipmi_port:
		Cmd.append(" -p " + quote(config.ipmi_port))

	if len(config.ipmi_user) != 0:
		Cmd.append(" -U " + quote(config.ipmi_user))

	if config.ipmi_password:
		Cmd.append(" -P " + quote(config.ipmi_password), " -P [set]")
	else:
		Cmd.append(" -P ''", " -P [set]")

	if config.ipmi_options:
		Cmd.append(" " + config.ipmi_options)

	Cmd.append(" chassis power " + action)

	return (Cmd.cmd, Cmd.log)

def _run_command(config, bmc, action, runner):
	cmd, log_cmd = create_command(config, bmc, action)
	return runner(cmd, timeout=config.power_timeout, log_command=log_cmd)

def is_off(output):
	## anything that mentions off counts, we do not want to depend on the
	## exact wording of every BMC
	return "off" in output

def validate(config, binding):
	if not is_executable(config.ipmitool_path):
		return FenceOutcome.failed(BAD_CONFIG, "ipmitool not found or not executable at path " + config.ipmitool_path)
	if len(config.ipmi_user) == 0:
		return FenceOutcome.failed(BAD_CONFIG, "ipmi_user is not set in " + str(config.source))
	return None

def power_off(config, binding, runner=run_command, sleep=time.sleep):
	bmc = binding.bmc

	(status, _, err) = _run_command(config, bmc, "off", runner)
	if status != 0:
		logging.error("ipmi off %s failed (%s): %s", bmc, status, err.strip())
		return FenceOutcome.failed(COMMAND_ERROR, "ipmi off %s failed" % bmc)

	for attempt in range(1, config.status_retries + 1):
		(status, out, _) = _run_command(config, bmc, "status", runner)
		logging.info("ipmi stat %s attempt %d/%d: %s", bmc, attempt, config.status_retries, out.strip())
		if is_off(out):
			logging.info("ipmi stat %s off", bmc)
			return FenceOutcome.confirmed()
		if attempt < config.status_retries:
			sleep(config.status_wait)

	logging.error("ipmi stat %s not off", bmc)
	return FenceOutcome.failed(NOT_CONFIRMED_OFF, "ipmi stat %s not off" % bmc)

def status(config, binding, runner=run_command):
	"""Read-only power status query, returns (passed, detail)"""
	(rc, out, err) = _run_command(config, binding.bmc, "status", runner)
	match = STATUS_RE.search(str(out))
	if rc != 0 or match is None:
		return (False, "ipmi stat %s failed: %s" % (binding.bmc, (err or out).strip()))
	return (True, "power is %s" % match.group(1).lower())
