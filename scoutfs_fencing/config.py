"""
Configuration of fence-remote-host.

Two files are read once at start-up and never again:

  * the configuration file, "key = value" lines with tunables and backend
    credentials (parsed with ConfigObj)
  * the host binding table, one "<node-address> <backend-kind> <backend-address>"
    line per node that may need to be fenced

Everything is handed around explicitly as a FenceConfig and a dictionary of
bindings keyed by node address.
"""

import os
import re
import logging

from configobj import ConfigObj, ConfigObjError

from scoutfs_fencing.fencing import ConfigError, DEFAULT_CONFIG, \
	DIRECT_POWER, REDUNDANT_PROXY, VIRTUALIZED_HOST

DEFAULTS = {
	"ssh_path" : "/usr/bin/ssh",
	"ssh_user" : "root",
	"ssh_identity_file" : "",
	"ssh_options" : "-o StrictHostKeyChecking=no",
	"ssh_timeout" : "5",
	"probe_timeout" : "15",
	"probe_status_path" : "/sys/kernel/boot_params/version",
	"probe_paths" : "/sys/fs/scoutfs/*/rid",
	"ipmitool_path" : "/usr/bin/ipmitool",
	"ipmi_user" : "",
	"ipmi_password" : "",
	"ipmi_lanplus" : "1",
	"ipmi_port" : "",
	"ipmi_options" : "",
	"status_retries" : "5",
	"status_wait" : "2",
	"power_timeout" : "20",
	"powerman_path" : "/usr/bin/pm",
	"powerman_port" : "10101",
	"connect_timeout" : "3",
	"vsphere_credentials" : "",
	"vsphere_user" : "",
	"vsphere_password" : "",
	"vsphere_password_encoded" : "0",
	"vsphere_port" : "443",
	"vsphere_api_path" : "/rest",
	"vsphere_ssl_insecure" : "0",
	"vsphere_timeout" : "10",
	"vsphere_settle" : "5",
}

INTEGER_KEYS = ["ssh_timeout", "probe_timeout", "status_retries", "status_wait",
	"power_timeout", "powerman_port", "connect_timeout", "vsphere_port",
	"vsphere_timeout", "vsphere_settle"]

BOOLEAN_KEYS = ["ipmi_lanplus", "vsphere_password_encoded", "vsphere_ssl_insecure"]

KIND_ALIASES = {
	DIRECT_POWER : DIRECT_POWER,
	"ipmi" : DIRECT_POWER,
	REDUNDANT_PROXY : REDUNDANT_PROXY,
	"powerman" : REDUNDANT_PROXY,
	VIRTUALIZED_HOST : VIRTUALIZED_HOST,
	"vmware" : VIRTUALIZED_HOST,
}

class FenceConfig(object):
	"""Tunables and credentials, one attribute per configuration key."""

	def __init__(self, values=None, source=None):
		self.source = source
		merged = dict(DEFAULTS)
		merged.update(values or {})

		unknown = sorted(set(merged) - set(DEFAULTS))
		for key in unknown:
			logging.warning("Ignoring unknown configuration key '%s' in %s", key, source)
			del merged[key]

		for key, value in merged.items():
			value = _unquote(value)
			if key in INTEGER_KEYS:
				value = _to_int(key, value, source)
			elif key in BOOLEAN_KEYS:
				value = value.lower() in ["1", "yes", "on", "true"]
			setattr(self, key, value)

		if self.status_retries < 1:
			raise ConfigError("Failed: status_retries in %s has to be at least 1" % source)

		self.probe_paths = self.probe_paths.split()

def load_config(path=DEFAULT_CONFIG):
	if not os.path.exists(path):
		if path == DEFAULT_CONFIG:
			logging.debug("No configuration file %s, using defaults", path)
			return FenceConfig(source=path)
		raise ConfigError("Failed: Configuration file %s does not exist" % path)

	try:
		parsed = ConfigObj(path, file_error=True, list_values=False, interpolation=False)
	except (IOError, OSError) as e:
		raise ConfigError("Failed: Unable to read configuration file %s: %s" % (path, e))
	except ConfigObjError as e:
		raise ConfigError("Failed: Unable to parse configuration file %s: %s" % (path, e))

	sections = [key for key in parsed if isinstance(parsed[key], dict)]
	if sections:
		raise ConfigError("Failed: Unexpected section [%s] in %s" % (sections[0], path))

	return FenceConfig(parsed.dict(), source=path)

class DirectPowerBinding(object):
	kind = DIRECT_POWER

	def __init__(self, address, bmc):
		self.address = address
		self.bmc = bmc

	def describe(self):
		return "ipmi %s" % self.bmc

class RedundantProxyBinding(object):
	kind = REDUNDANT_PROXY

	def __init__(self, address, servers, node):
		## servers is a list of (host, port) in the order they should be tried
		self.address = address
		self.servers = servers
		self.node = node

	def describe(self):
		return "powerman %s via %s" % (self.node, ",".join(["%s:%s" % s for s in self.servers]))

class VirtualizedHostBinding(object):
	kind = VIRTUALIZED_HOST

	def __init__(self, address, api_host, guest_id, api_port=None):
		## api_port None means vsphere_port from the configuration
		self.address = address
		self.api_host = api_host
		self.guest_id = guest_id
		self.api_port = api_port

	def describe(self):
		if self.api_port:
			return "vmware %s on %s:%d" % (self.guest_id, self.api_host, self.api_port)
		return "vmware %s on %s" % (self.guest_id, self.api_host)

def parse_binding(address, kind, backend_address, config):
	"""
	Turn one host table entry into its binding, raising ValueError with
	a short explanation when the backend address does not fit the kind.
	"""
	if kind not in KIND_ALIASES:
		raise ValueError("unknown backend kind '%s'" % kind)
	kind = KIND_ALIASES[kind]

	if kind == DIRECT_POWER:
		return DirectPowerBinding(address, backend_address)

	(head, sep, name) = backend_address.rpartition(":")
	if not sep or not head or not name:
		raise ValueError("expected <%s>:<%s>" % (
			"servers" if kind == REDUNDANT_PROXY else "api-host",
			"node" if kind == REDUNDANT_PROXY else "guest-id"))

	if kind == VIRTUALIZED_HOST:
		(host, sep, port) = head.partition(":")
		if not sep:
			return VirtualizedHostBinding(address, host, name)
		if not host or not port.isdigit():
			raise ValueError("expected <api-host>[:<port>]:<guest-id>, got '%s'" % backend_address)
		return VirtualizedHostBinding(address, host, name, int(port))

	servers = []
	for entry in head.split(","):
		(host, sep, port) = entry.partition(":")
		if not host:
			raise ValueError("empty powerman server in '%s'" % head)
		if sep:
			try:
				port = int(port)
			except ValueError:
				raise ValueError("invalid powerman port in '%s'" % entry)
		else:
			port = config.powerman_port
		servers.append((host, port))

	return RedundantProxyBinding(address, servers, name)

def load_hosts(path, config):
	bindings = {}

	try:
		with open(path, "r") as f:
			lines = f.readlines()
	except (IOError, OSError) as e:
		raise ConfigError("Failed: Unable to read host table %s: %s" % (path, e))

	for (number, line) in enumerate(lines, 1):
		line = line.strip()
		if (line.startswith("#")) or (len(line) == 0):
			continue

		fields = line.split()
		if len(fields) != 3:
			raise ConfigError("Failed: %s:%d: expected <node-address> <backend-kind> "
				"<backend-address>, got '%s'" % (path, number, line))

		(address, kind, backend_address) = fields
		if address in bindings:
			raise ConfigError("Failed: %s:%d: node %s is listed more than once" % (path, number, address))

		try:
			bindings[address] = parse_binding(address, kind, backend_address, config)
		except ValueError as e:
			raise ConfigError("Failed: %s:%d: %s" % (path, number, e))

	logging.debug("Loaded %d host bindings from %s", len(bindings), path)
	return bindings

def _unquote(value):
	return re.sub(r"^\"(.*)\"$", r"\1", str(value).strip())

def _to_int(key, value, source):
	try:
		return int(value)
	except ValueError:
		raise ConfigError("Failed: The value '%s' for %s in %s is not a valid integer" % (value, key, source))
