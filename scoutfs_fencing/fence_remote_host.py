"""
fence-remote-host: fence a scoutfs node that quorum believes may still hold
a stale mount.

scoutfs-fenced runs this with the address and resource id of the node in
its environment. The node is asked over ssh whether the mount is still
there. Only a complete answer that it is not lets us skip fencing; an
unreachable node or an incomplete answer is powered off through the
backend configured for it, and we only report success once the backend
confirms that power is off.
"""

import sys
import signal
import logging

from scoutfs_fencing import probe as liveness
from scoutfs_fencing import selftest
from scoutfs_fencing.agents import ipmi, powerman, vmware
from scoutfs_fencing.config import load_config, load_hosts
from scoutfs_fencing.fencing import process_input, check_input, setup_logging, show_docs, \
	ConfigError, FenceOutcome, EC_OK, EC_GENERIC_ERROR, EC_BAD_ARGS, \
	DIRECT_POWER, REDUNDANT_PROXY, VIRTUALIZED_HOST, REACHABLE_UNMOUNTED, UNKNOWN_BACKEND

DRIVERS = {
	DIRECT_POWER : ipmi,
	REDUNDANT_PROXY : powerman,
	VIRTUALIZED_HOST : vmware,
}

class FenceInterrupted(KeyboardInterrupt):
	pass

def fence_node(config, bindings, address, rid, prober=liveness.probe, drivers=DRIVERS):
	binding = bindings.get(address)
	if binding is None:
		logging.error("No backend configured for %s", address)
		return FenceOutcome.failed(UNKNOWN_BACKEND, "no backend configured for %s" % address)

	driver = drivers[binding.kind]
	logging.info("Fencing %s rid %s, backend %s", address, rid, binding.describe())

	outcome = driver.validate(config, binding)
	if outcome is not None:
		logging.error("%s", outcome.message)
		return outcome

	result = prober(config, address, rid)
	if result == REACHABLE_UNMOUNTED:
		logging.info("rid %s is not mounted on %s, not fencing", rid, address)
		return FenceOutcome.skipped("not-mounted")

	logging.info("%s is %s, powering off through %s", address, result, binding.kind)
	outcome = driver.power_off(config, binding)
	logging.info("Fencing %s rid %s: %s", address, rid, outcome)
	return outcome

def _terminate(signum, frame):
	raise FenceInterrupted("signal %d" % signum)

def main(argv=None):
	device_opt = ["help", "version", "verbose", "quiet", "debug", "ipaddr", "rid",
		"test", "config", "hosts"]

	docs = {}
	docs["shortdesc"] = "Fence a scoutfs node through IPMI, powerman or VMware"

	try:
		options = check_input(device_opt, process_input(device_opt, argv))
		if show_docs(options, docs):
			return EC_OK
		setup_logging(options)
	except ConfigError as e:
		logging.error("%s", e)
		logging.error("Please use '-h' for usage")
		return EC_BAD_ARGS

	signal.signal(signal.SIGTERM, _terminate)

	try:
		config = load_config(options["--config"])
		bindings = load_hosts(options["--hosts"], config)

		if "--test" in options:
			failures = selftest.test_all(config, bindings)
			return min(failures, 255)

		outcome = fence_node(config, bindings, options["--ip"], options["--rid"])
	except ConfigError as e:
		logging.error("%s", e)
		return EC_BAD_ARGS
	except KeyboardInterrupt as e:
		logging.error("Interrupted (%s), exiting", str(e) or "keyboard")
		return EC_GENERIC_ERROR

	print(str(outcome))
	return outcome.exit_code

if __name__ == "__main__":
	sys.exit(main())
