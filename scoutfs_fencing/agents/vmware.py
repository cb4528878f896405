import io
import json
import time
import base64
import signal
import logging
from urllib.parse import quote

import pycurl

from scoutfs_fencing.fencing import FenceOutcome, AUTH_ERROR, BAD_CREDENTIALS, NOT_CONFIRMED_OFF

POWERED_OFF = "POWERED_OFF"

SESSION_PATH = "com/vmware/cis/session"

class ApiError(Exception):
	pass

class RestClient(object):
	"""
	Minimal vSphere REST client on top of pycurl.

	One instance holds one API session, login() has to succeed before
	anything else is sent and logout() ends the session again.
	"""

	def __init__(self, config, api_host, api_port=None):
		self.conn = pycurl.Curl()
		self.base_url = "https://%s:%d%s/" % (api_host, api_port or config.vsphere_port,
			config.vsphere_api_path.rstrip("/"))
		self.session_id = None

		self.conn.setopt(pycurl.HTTPHEADER, [
			"Accept: application/json",
		])
		self.conn.setopt(pycurl.TIMEOUT, config.vsphere_timeout)
		self.conn.setopt(pycurl.CONNECTTIMEOUT, config.vsphere_timeout)

		if config.vsphere_ssl_insecure:
			self.conn.setopt(pycurl.SSL_VERIFYPEER, 0)
			self.conn.setopt(pycurl.SSL_VERIFYHOST, 0)
		else:
			self.conn.setopt(pycurl.SSL_VERIFYPEER, 1)
			self.conn.setopt(pycurl.SSL_VERIFYHOST, 2)

	def login(self, user, password):
		self.conn.setopt(pycurl.HTTPAUTH, pycurl.HTTPAUTH_BASIC)
		self.conn.setopt(pycurl.USERPWD, user + ":" + password)
		try:
			result = self.send_command(SESSION_PATH, "POST")
		finally:
			self.conn.unsetopt(pycurl.USERPWD)

		## /rest wraps everything in "value", /api returns the bare token
		token = result.get("value") if isinstance(result, dict) else result
		if not token or not isinstance(token, str):
			raise ApiError("No session id in login response")

		self.session_id = token
		self.conn.setopt(pycurl.HTTPHEADER, [
			"Accept: application/json",
			"vmware-api-session-id: {}".format(token),
		])
		return token

	def logout(self):
		self.send_command(SESSION_PATH, "DELETE")
		self.session_id = None

	def power_stop(self, guest_id):
		self.send_command("vcenter/vm/{}/power/stop".format(quote(guest_id)), "POST")

	def power_state(self, guest_id):
		result = self.send_command("vcenter/vm/{}/power".format(quote(guest_id)))
		if isinstance(result, dict) and isinstance(result.get("value"), dict):
			result = result["value"]
		try:
			return result["state"]
		except (KeyError, TypeError):
			raise ApiError("No power state in response: {}".format(result))

	def close(self):
		self.conn.close()

	def send_command(self, command, method="GET"):
		url = self.base_url + command

		self.conn.setopt(pycurl.URL, url.encode("ascii"))

		web_buffer = io.BytesIO()

		if method == "GET":
			self.conn.setopt(pycurl.HTTPGET, 1)
		if method == "POST":
			self.conn.setopt(pycurl.POSTFIELDS, "")
		self.conn.setopt(pycurl.CUSTOMREQUEST, method)

		self.conn.setopt(pycurl.WRITEFUNCTION, web_buffer.write)

		self.conn.perform()

		rc = self.conn.getinfo(pycurl.HTTP_CODE)
		result = web_buffer.getvalue().decode("UTF-8")

		web_buffer.close()

		logging.debug("url: {}".format(url))
		logging.debug("method: {}".format(method))
		logging.debug("response code: {}".format(rc))
		logging.debug("result: {}".format(result))

		if len(result) > 0:
			try:
				result = json.loads(result)
			except ValueError:
				raise ApiError("{}: response is not JSON: {}".format(rc, result[:200]))

		if rc not in [200, 201, 204]:
			raise ApiError("{}: {}".format(rc, _error_message(result) or "Remote returned {} for request to {}".format(rc, url)))

		## a few endpoints report errors with a success code
		if isinstance(result, dict) and ("error_type" in result or
				str(result.get("type", "")).startswith("com.vmware.vapi.std.errors")):
			raise ApiError("{}: {}".format(rc, _error_message(result)))

		return result

def _error_message(result):
	if not isinstance(result, dict):
		return None
	try:
		if "error_type" in result:
			return "{} {}".format(result["error_type"], result["messages"][0]["default_message"])
		return "{} {}".format(result["type"], result["value"]["messages"][0]["default_message"])
	except (KeyError, IndexError, TypeError):
		return str(result.get("error_type") or result.get("type") or "")

def get_credentials(config):
	"""
	Returns (user, password). Raises ValueError when they are missing or
	cannot be decoded.
	"""
	if config.vsphere_credentials:
		decoded = base64.b64decode(config.vsphere_credentials, validate=True).decode("utf-8")
		(user, sep, password) = decoded.partition(":")
		if not sep or not user:
			raise ValueError("vsphere_credentials does not decode to <user>:<password>")
		return (user, password)

	if not config.vsphere_user:
		raise ValueError("neither vsphere_credentials nor vsphere_user is set")

	password = config.vsphere_password
	if config.vsphere_password_encoded:
		password = base64.b64decode(password, validate=True).decode("utf-8")
	return (config.vsphere_user, password)

def validate(config, binding):
	try:
		get_credentials(config)
	except ValueError as e:
		return FenceOutcome.failed(BAD_CREDENTIALS, "vmware credentials in %s: %s" % (config.source, e))
	return None

def connect(conn, binding, user, password):
	"""Log conn in, returns False after logging why login failed"""
	## an interrupt while the session is being created would lose its id,
	## hold SIGTERM and SIGINT until login() has recorded it
	blocked = signal.pthread_sigmask(signal.SIG_BLOCK, [signal.SIGTERM, signal.SIGINT])
	try:
		conn.login(user, password)
	except (pycurl.error, ApiError) as e:
		logging.error("vmware login to %s failed: %s", binding.api_host, e)
		return False
	finally:
		signal.pthread_sigmask(signal.SIG_SETMASK, blocked)
	return True

def disconnect(conn, binding):
	## Failing to end the session does not change the result of fencing
	try:
		if conn.session_id is not None:
			conn.logout()
	except (pycurl.error, ApiError) as e:
		logging.error("vmware logout from %s failed, session may be left open: %s", binding.api_host, e)
	finally:
		conn.close()

def power_off(config, binding, client_factory=RestClient, sleep=time.sleep):
	guest = binding.guest_id

	try:
		(user, password) = get_credentials(config)
	except ValueError as e:
		logging.error("vmware credentials in %s: %s", config.source, e)
		return FenceOutcome.failed(BAD_CREDENTIALS, "vmware credentials: %s" % e)

	conn = client_factory(config, binding.api_host, binding.api_port)
	try:
		if not connect(conn, binding, user, password):
			return FenceOutcome.failed(AUTH_ERROR, "vmware login to %s failed" % binding.api_host)

		outcome = FenceOutcome.failed(NOT_CONFIRMED_OFF, "vmware stat %s not off" % guest)
		try:
			logging.info("vmware off %s on %s", guest, binding.api_host)
			conn.power_stop(guest)
		except (pycurl.error, ApiError) as e:
			logging.error("vmware off %s failed: %s", guest, e)
			return outcome

		sleep(config.vsphere_settle)

		try:
			state = conn.power_state(guest)
		except (pycurl.error, ApiError) as e:
			logging.error("vmware stat %s failed: %s", guest, e)
			return outcome

		if state == POWERED_OFF:
			logging.info("vmware stat %s off", guest)
			outcome = FenceOutcome.confirmed()
		else:
			logging.error("vmware stat %s not off: %s", guest, state)
		return outcome
	finally:
		disconnect(conn, binding)

def status(config, binding, client_factory=RestClient):
	"""
	Read-only check: log in, read the power state, log out.
	Returns (passed, detail, logged_in).
	"""
	try:
		(user, password) = get_credentials(config)
	except ValueError as e:
		return (False, "bad credentials: %s" % e, False)

	conn = client_factory(config, binding.api_host, binding.api_port)
	try:
		if not connect(conn, binding, user, password):
			return (False, "login to %s failed" % binding.api_host, False)
		try:
			state = conn.power_state(binding.guest_id)
		except (pycurl.error, ApiError) as e:
			return (False, "power state of %s: %s" % (binding.guest_id, e), True)
	finally:
		disconnect(conn, binding)

	return (True, "power state %s" % state, True)
