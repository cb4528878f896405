import sys, getopt, os, re, stat, syslog
import logging
import subprocess
import threading
import shlex
import textwrap

import pexpect

from scoutfs_fencing import RELEASE_VERSION

__all__ = ['all_opt', 'process_input', 'check_input', 'setup_logging', 'show_docs',
		'run_command', 'fspawn', 'is_executable', 'ConfigError', 'FenceOutcome']

EC_OK = 0
EC_GENERIC_ERROR = 1
EC_BAD_ARGS = 2
EC_LOGIN_DENIED = 3
EC_TIMED_OUT = 5
EC_WAITING_OFF = 7

LOG_FORMAT = "%(asctime)-15s %(levelname)s: %(message)s"
SYSLOG_IDENT = "fence-remote-host"

DEFAULT_CONFIG = "/etc/scoutfs/fence-remote-host.conf"
DEFAULT_HOSTS = "/etc/scoutfs/fence-remote-hosts"

## Environment set by scoutfs-fenced when it runs the fencing script
ENV_REQ_IP = "SCOUTFS_FENCED_REQ_IP"
ENV_REQ_RID = "SCOUTFS_FENCED_REQ_RID"

## Liveness of the target node as seen over the remote command channel
UNREACHABLE = "unreachable"
REACHABLE_MOUNTED = "mounted"
REACHABLE_UNMOUNTED = "unmounted"
REACHABLE_AMBIGUOUS = "ambiguous"

## Backend kinds
DIRECT_POWER = "direct-power"
REDUNDANT_PROXY = "redundant-proxy"
VIRTUALIZED_HOST = "virtualized-host"

## Failure reasons reported to the quorum subsystem
UNKNOWN_BACKEND = "unknown-backend"
COMMAND_ERROR = "command-error"
NOT_CONFIRMED_OFF = "not-confirmed-off"
NO_SERVER_CONFIRMED = "no-server-confirmed"
AUTH_ERROR = "auth-error"
BAD_CREDENTIALS = "bad-credentials"
BAD_CONFIG = "bad-config"

all_opt = {
	"help"    : {
		"getopt" : "h",
		"longopt" : "help",
		"help" : "-h, --help                     Display this help and exit",
		"order" : 55},
	"version" : {
		"getopt" : "V",
		"longopt" : "version",
		"help" : "-V, --version                  Display version information and exit",
		"order" : 54},
	"verbose" : {
		"getopt" : "v",
		"longopt" : "verbose",
		"help" : "-v, --verbose                  Verbose mode",
		"order" : 51},
	"quiet" : {
		"getopt" : "q",
		"longopt" : "quiet",
		"help" : "-q, --quiet                    Log only to syslog, not to standard error",
		"order" : 52},
	"debug" : {
		"getopt" : "D:",
		"longopt" : "debug-file",
		"help" : "-D, --debug-file=[debugfile]   Debugging to output file",
		"order" : 53},
	"ipaddr" : {
		"getopt" : "a:",
		"longopt" : "ip",
		"help" : "-a, --ip=[ip]                  Address of the node to fence "
				"(default: $" + ENV_REQ_IP + ")",
		"env" : ENV_REQ_IP,
		"order" : 1},
	"rid" : {
		"getopt" : "r:",
		"longopt" : "rid",
		"help" : "-r, --rid=[rid]                Resource id of the mount to check for "
				"(default: $" + ENV_REQ_RID + ")",
		"env" : ENV_REQ_RID,
		"order" : 2},
	"test" : {
		"getopt" : "t",
		"longopt" : "test",
		"help" : "-t, --test                     Test connectivity to every configured node "
				"and backend, do not fence anything",
		"order" : 3},
	"config" : {
		"getopt" : "c:",
		"longopt" : "config",
		"help" : "-c, --config=[file]            Configuration file",
		"default" : DEFAULT_CONFIG,
		"order" : 10},
	"hosts" : {
		"getopt" : "H:",
		"longopt" : "hosts",
		"help" : "-H, --hosts=[file]             Host binding table",
		"default" : DEFAULT_HOSTS,
		"order" : 11},
}

class ConfigError(Exception):
	"""
	Raised for anything that is wrong with how we were invoked or configured.
	Never retried, it has to be fixed by an administrator.
	"""
	pass

class FenceOutcome(object):
	SKIPPED = "skipped"
	CONFIRMED = "confirmed"
	FAILED = "failed"

	exit_codes = {
		UNKNOWN_BACKEND : EC_BAD_ARGS,
		BAD_CONFIG : EC_BAD_ARGS,
		BAD_CREDENTIALS : EC_BAD_ARGS,
		AUTH_ERROR : EC_LOGIN_DENIED,
		COMMAND_ERROR : EC_GENERIC_ERROR,
		NOT_CONFIRMED_OFF : EC_WAITING_OFF,
		NO_SERVER_CONFIRMED : EC_WAITING_OFF,
	}

	def __init__(self, status, reason=None, message=None):
		self.status = status
		self.reason = reason
		self.message = message

	@classmethod
	def skipped(cls, reason):
		return cls(cls.SKIPPED, reason)

	@classmethod
	def confirmed(cls):
		return cls(cls.CONFIRMED)

	@classmethod
	def failed(cls, reason, message=None):
		return cls(cls.FAILED, reason, message)

	@property
	def is_failed(self):
		return self.status == self.FAILED

	@property
	def exit_code(self):
		if not self.is_failed:
			return EC_OK
		return self.exit_codes.get(self.reason, EC_GENERIC_ERROR)

	def __eq__(self, other):
		if not isinstance(other, FenceOutcome):
			return NotImplemented
		return (self.status, self.reason) == (other.status, other.reason)

	def __ne__(self, other):
		result = self.__eq__(other)
		if result is NotImplemented:
			return result
		return not result

	def __repr__(self):
		if self.reason is None:
			return "FenceOutcome(%s)" % self.status
		return "FenceOutcome(%s, %s)" % (self.status, self.reason)

	def __str__(self):
		if self.status == self.CONFIRMED:
			return "Success: Powered OFF"
		if self.status == self.SKIPPED:
			return "Success: Skipped (%s)" % self.reason
		return "Failed: %s" % (self.message or self.reason)

class fspawn(pexpect.spawn):
	def __init__(self, command, args=None, **kwargs):
		kwargs.setdefault('encoding', 'utf-8')
		## undecodable bytes in remote output become U+FFFD
		kwargs.setdefault('codec_errors', 'replace')
		args = args or []
		logging.info("Running command: %s %s", command, " ".join(args))
		pexpect.spawn.__init__(self, command, args, **kwargs)

	def log_expect(self, pattern, timeout):
		result = self.expect(pattern, timeout if timeout != 0 else None)
		logging.debug("Received: %s", self.before)
		return result

def fail_usage(message=""):
	raise ConfigError(message)

def usage(avail_opt):
	print("Usage:")
	print("\t" + os.path.basename(sys.argv[0]) + " [options]")
	print("Options:")

	sorted_list = [(key, all_opt[key]) for key in avail_opt]
	sorted_list.sort(key=lambda x: x[1]["order"])

	for key, value in sorted_list:
		if len(value["help"]) != 0:
			print("   " + _join_wrap([value["help"]], first_indent=3))

def show_docs(options, docs=None):
	"""
	Print help or version information.
	Returns True when one of them was shown and nothing else should be done.
	"""
	device_opt = options["device_opt"]

	if "--help" in options:
		if docs:
			print(docs.get("shortdesc", ""))
			print("")
		usage(device_opt)
		return True

	if "--version" in options:
		print(RELEASE_VERSION)
		return True

	return False

def process_input(avail_opt, argv=None):
	if argv is None:
		argv = sys.argv[1:]

	os.putenv("LANG", "C")
	os.putenv("LC_ALL", "C")

	return _parse_input_cmdline(avail_opt, argv)

##
## Fill in defaults and values that scoutfs-fenced passes in the environment,
## then check that what we have is enough to run
######
def check_input(device_opt, opt, environ=None):
	if environ is None:
		environ = os.environ

	options = dict(opt)
	options["device_opt"] = device_opt

	if any(k in options for k in ("--help", "--version")):
		return options

	for key in device_opt:
		longopt = "--" + all_opt[key]["longopt"]
		if longopt in options:
			continue
		if "env" in all_opt[key] and environ.get(all_opt[key]["env"]):
			options[longopt] = environ[all_opt[key]["env"]]
		elif "default" in all_opt[key]:
			options[longopt] = all_opt[key]["default"]

	_validate_input(options)

	return options

def setup_logging(options):
	logger = logging.getLogger()
	if "--verbose" in options:
		logger.setLevel(logging.DEBUG)
	else:
		logger.setLevel(logging.INFO)

	formatter = logging.Formatter(LOG_FORMAT)

	## add logging to syslog
	syslog.openlog(SYSLOG_IDENT, syslog.LOG_PID, syslog.LOG_DAEMON)
	logger.addHandler(SyslogLibHandler())

	if "--quiet" not in options:
		## add logging to stderr
		stderrHandler = logging.StreamHandler(sys.stderr)
		stderrHandler.setFormatter(formatter)
		logger.addHandler(stderrHandler)

	if "--debug-file" in options:
		try:
			debug_file = logging.FileHandler(options["--debug-file"])
		except IOError as e:
			fail_usage("Failed: Unable to create file %s: %s" % (options["--debug-file"], e))
		debug_file.setLevel(logging.DEBUG)
		debug_file.setFormatter(formatter)
		logger.addHandler(debug_file)

def is_executable(path):
	if os.path.exists(path):
		stats = os.stat(path)
		if stat.S_ISREG(stats.st_mode) and os.access(path, os.X_OK):
			return True
	return False

def run_command(command, timeout=None, env=None, log_command=None):
	"""
	Run an external command and wait at most timeout seconds for it.

	Returns (status, stdout, stderr). A command that could not be started
	or had to be killed reports EC_GENERIC_ERROR or EC_TIMED_OUT as its
	status, it is up to the caller to decide what that means.
	"""
	if timeout is not None:
		timeout = float(timeout)

	logging.info("Executing: %s", log_command or command)

	try:
		process = subprocess.Popen(shlex.split(command), stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=env,
				universal_newlines=True)
	except OSError as e:
		logging.error("Unable to run %s: %s", log_command or command, e)
		return (EC_GENERIC_ERROR, "", str(e))

	thread = threading.Thread(target=process.wait)
	thread.start()
	thread.join(timeout if timeout else None)
	if thread.is_alive():
		process.kill()
		process.wait()
		process.stdout.close()
		process.stderr.close()
		logging.error("Timed out after %s seconds: %s", timeout, log_command or command)
		return (EC_TIMED_OUT, "", "timed out")

	status = process.wait()

	(pipe_stdout, pipe_stderr) = process.communicate()
	process.stdout.close()
	process.stderr.close()

	logging.debug("%s %s %s", str(status), str(pipe_stdout), str(pipe_stderr))

	return (status, pipe_stdout, pipe_stderr)

## Own logger handler that uses old-style syslog handler as otherwise everything is sourced
## from /dev/syslog
class SyslogLibHandler(logging.StreamHandler):
	"""
	A handler class that correctly push messages into syslog
	"""
	def emit(self, record):
		syslog_level = {
			logging.CRITICAL:syslog.LOG_CRIT,
			logging.ERROR:syslog.LOG_ERR,
			logging.WARNING:syslog.LOG_WARNING,
			logging.INFO:syslog.LOG_INFO,
			logging.DEBUG:syslog.LOG_DEBUG,
			logging.NOTSET:syslog.LOG_DEBUG,
		}[record.levelno]

		msg = self.format(record)

		# syslog.syslog can not have 0x00 character inside or exception is thrown
		syslog.syslog(syslog_level, msg.replace("\x00", "\n"))
		return

RID_RE = re.compile(r"^[\w.-]+$")

def _validate_input(options):
	if "--test" in options:
		return

	if not options.get("--ip"):
		fail_usage("Failed: You have to enter the address of the node to fence")

	if not options.get("--rid"):
		fail_usage("Failed: You have to enter the resource id of the mount")

	if not RID_RE.match(options["--rid"]):
		fail_usage("Failed: Resource id '%s' contains invalid characters" % options["--rid"])

def _prepare_getopt_args(options):
	getopt_string = ""
	longopt_list = []
	for k in options:
		if k not in all_opt:
			fail_usage("Parse error: unknown option '" + k + "'")

		getopt_string += all_opt[k]["getopt"]

		if all_opt[k]["getopt"].endswith(":"):
			longopt_list.append(all_opt[k]["longopt"] + "=")
		else:
			longopt_list.append(all_opt[k]["longopt"])

	return (getopt_string, longopt_list)

def _parse_input_cmdline(avail_opt, argv):
	_verify_unique_getopt(avail_opt)
	(getopt_string, longopt_list) = _prepare_getopt_args(avail_opt)

	try:
		(entered_opt, left_arg) = getopt.gnu_getopt(argv, getopt_string, longopt_list)
	except getopt.GetoptError as error:
		fail_usage("Parse error: " + error.msg)

	if len(left_arg) > 0:
		logging.warning("Unused arguments on command line: %s" % (str(left_arg)))

	# Short and long getopt names are changed to consistent "--" + long name (e.g. --rid)
	long_opts = {}
	for (arg_name, value) in entered_opt:
		all_key = [key for key in avail_opt \
			if "--" + all_opt[key]["longopt"] == arg_name or "-" + all_opt[key]["getopt"].rstrip(":") == arg_name][0]
		long_opts["--" + all_opt[all_key]["longopt"]] = value if all_opt[all_key]["getopt"].endswith(":") else "1"

	return long_opts

# for ["John", "Mary", "Eli"] returns "John, Mary and Eli"
def _join2(words, normal_separator=", ", last_separator=" and "):
	if len(words) <= 1:
		return "".join(words)
	else:
		return last_separator.join([normal_separator.join(words[:-1]), words[-1]])

def _join_wrap(words, normal_separator=", ", last_separator=" and ", first_indent=42):
	x = _join2(words, normal_separator, last_separator)
	wrapper = textwrap.TextWrapper()
	wrapper.initial_indent = " "*first_indent
	wrapper.subsequent_indent = " "*40
	wrapper.width = 85
	wrapper.break_on_hyphens = False
	wrapper.break_long_words = False
	wrapped_text = ""
	for line in wrapper.wrap(x):
		wrapped_text += line + "\n"
	return wrapped_text.lstrip().rstrip("\n")

def _verify_unique_getopt(avail_opt):
	used_getopt = set()

	for opt in avail_opt:
		getopt_value = all_opt[opt].get("getopt", "").rstrip(":")
		if getopt_value and getopt_value in used_getopt:
			fail_usage("Short getopt for %s (-%s) is not unique" % (opt, getopt_value))
		else:
			used_getopt.add(getopt_value)
