# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

from contextlib import contextmanager
import logging
import subprocess

from virtstore.common import cmdutils

log = logging.getLogger("common.commands")


def run(args, input=None, cwd=None, env=None, timeout=None, stdin=None,
        stdout=None):
    """
    Starts a command communicate with it, and wait until the command
    terminates. Ensures that the command is killed if an unexpected error is
    raised, or if the command did not terminate within timeout.

    args are logged when command starts, and are included in the exception if a
    command has failed.

    By default the child process stdout and stderr are buffered and the output
    is returned. Streaming commands (export, import) may pass a file object as
    stdin or stdout, connecting the command directly to the stream.

    Arguments:
        args (list): Command arguments
        input (bytes): Data to send to the command via stdin.
        cwd (str): working directory for the child process
        env (dict): environment of the new child process
        timeout (float): if not None, kill the command if it did not
            terminate after timeout seconds.
        stdin (file): if not None, file object used as the child stdin.
            Cannot be used with input.
        stdout (file): if not None, file object receiving the child stdout.
            The command output is not returned in this case.

    Returns:
        The command output (bytes)

    Raises:
        OSError if the command could not start.
        cmdutils.Error if the command terminated with a non-zero exit code.
        cmdutils.TimeoutExpired if the command did not terminate in time.
        TerminatingFailure if command could not be terminated.
    """
    if input is not None and stdin is not None:
        raise ValueError("input and stdin cannot be used together")

    if input is not None:
        stdin = subprocess.PIPE

    p = start(args,
              stdin=stdin,
              stdout=stdout if stdout is not None else subprocess.PIPE,
              stderr=subprocess.PIPE,
              cwd=cwd,
              env=env)

    with terminating(p):
        try:
            out, err = p.communicate(input, timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning("Command %s timed out after %s seconds",
                        cmdutils.command_log_line(args), timeout)
            raise cmdutils.TimeoutExpired(p.pid)

    log.debug(cmdutils.retcode_log_line(p.returncode, err))

    if p.returncode != 0:
        raise cmdutils.Error(args, p.returncode, out, err)

    return out if out is not None else b""


def start(args, stdin=None, stdout=None, stderr=None, cwd=None, env=None):
    """
    Starts a command and return it. The caller is responsible for communicating
    with the command, waiting for it, and if needed, terminating it.

    Arguments:
        args (list): Command arguments
        stdin (file or int): file object or descriptor for sending data to the
            child process stdin.
        stdout (file or int): file object or descriptor for receiving data from
            the child process stdout.
        stderr (file or int): file object or descriptor for receiving data from
            the child process stderr.
        cwd (str): working directory for the child process
        env (dict): environment of the new child process

    Returns:
        subprocess.Popen instance.

    Raises:
        OSError if the command could not start.
    """
    args = [str(a) for a in args]

    log.debug(cmdutils.command_log_line(args, cwd=cwd))

    return subprocess.Popen(
        args,
        cwd=cwd,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        env=env)


class TerminatingFailure(Exception):

    msg = "Failed to terminate process {self.pid}: {self.error}"

    def __init__(self, pid, error):
        self.pid = pid
        self.error = error

    def __str__(self):
        return self.msg.format(self=self)


def terminate(proc):
    try:
        if proc.poll() is None:
            log.debug('Terminating process pid=%d', proc.pid)
            proc.kill()
            proc.wait()
    except Exception as e:
        raise TerminatingFailure(proc.pid, e)


@contextmanager
def terminating(proc):
    try:
        yield proc
    finally:
        terminate(proc)
