'''Simple and lightweight module for working with Scanse Sweep scanners.

Usage example:

>>> from sweep import Sweep
>>> sweep = Sweep('/dev/ttyUSB0')
>>>
>>> sweep.set_motor_speed(5)
>>> print(sweep.get_motor_speed(), sweep.get_sample_rate())
>>>
>>> sweep.start_scanning()
>>> for i, scan in enumerate(sweep.iter_scans()):
...  print('%d: Got %d samples' % (i, len(scan)))
...  if i > 10:
...   break
...
>>> sweep.stop_scanning()
>>> sweep.disconnect()

The device speaks a line oriented ASCII protocol: every command is two
letters, optionally followed by a two digit argument, and terminated by a
line feed. Replies carry no length field, so each one is read as a fixed
number of bytes.

For additional information please refer to the Sweep class documentation.
'''
import logging
import time
from collections import deque, namedtuple

import serial

COMMAND_TERMINATION = b'\n'

CMD_DATA_ACQUISITION_START  = b'DS'
CMD_DATA_ACQUISITION_STOP   = b'DX'
CMD_MOTOR_READY             = b'MZ'
CMD_MOTOR_SPEED_ADJUST      = b'MS'
CMD_MOTOR_INFORMATION       = b'MI'
CMD_SAMPLE_RATE_ADJUST      = b'LR'
CMD_SAMPLE_RATE_INFORMATION = b'LI'
CMD_VERSION_INFORMATION     = b'IV'
CMD_DEVICE_INFORMATION      = b'ID'
CMD_RESET_DEVICE            = b'RR'

RESPONSE_HEADER_LEN       = 6
RESPONSE_PARAM_LEN        = 9
RESPONSE_SCAN_PACKET_LEN  = 7
RESPONSE_INFO_DEVICE_LEN  = 18
RESPONSE_INFO_VERSION_LEN = 21
RESPONSE_INFO_SETTING_LEN = 5

# Sync/Error byte bit masks
E6_MASK   = 0x80
E5_MASK   = 0x40
E4_MASK   = 0x20
E3_MASK   = 0x10
E2_MASK   = 0x08
E1_MASK   = 0x04
E0_MASK   = 0x02
SYNC_MASK = 0x01
ERROR_MASK = E6_MASK | E5_MASK | E4_MASK | E3_MASK | E2_MASK | E1_MASK | E0_MASK

ANGLE_SCALING_FACTOR = 16.0

DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 1

MOTOR_READY_ATTEMPTS = 20
MOTOR_READY_INTERVAL = .5
STOP_DRAIN_DELAY = .5
RESPONSIVE_TIMEOUT = 15
IO_LOG_SIZE = 100

MOTOR_SPEEDS = tuple(range(11))
SAMPLE_RATES = (500, 750, 1000)

# Indexed by motor speed in Hz
_MOTOR_SPEED_CODES = (
    b'00', b'01', b'02', b'03', b'04', b'05',
    b'06', b'07', b'08', b'09', b'10',
)

_SAMPLE_RATE_CODES = {
    500:  b'01',
    750:  b'02',
    1000: b'03',
}

_SAMPLE_RATE_HZ = {
    1: 500,
    2: 750,
    3: 1000,
}


class SweepException(Exception):
    '''Basic exception class for Sweep'''


class TransportError(SweepException):
    '''Serial port could not be opened or closed'''


def _showhex(signal):
    '''Converts string bytes to hex representation (useful for debugging)'''
    return [format(b, '#04x') for b in signal]


def _showascii(signal):
    '''Converts bytes to printable text with escaped line feeds'''
    return ''.join(chr(b) for b in signal).replace('\n', '\\n')


def _ascii_to_int(code):
    '''Converts two ASCII digits to an integer, returns -1 if either byte is
    not a digit'''
    tens = code[0] - ord('0')
    ones = code[1] - ord('0')
    if not (0 <= tens <= 9 and 0 <= ones <= 9):
        return -1
    return tens * 10 + ones


def motor_speed_code(speed):
    '''Returns the two byte ASCII argument for motor speed `speed` (Hz)'''
    if not isinstance(speed, int) or speed not in MOTOR_SPEEDS:
        raise ValueError('Motor speed must be one of %s, got %r'
                         % (MOTOR_SPEEDS, speed))
    return _MOTOR_SPEED_CODES[speed]


def sample_rate_code(rate):
    '''Returns the two byte ASCII argument for sample rate `rate` (Hz)'''
    if rate not in _SAMPLE_RATE_CODES:
        raise ValueError('Sample rate must be one of %s, got %r'
                         % (SAMPLE_RATES, rate))
    return _SAMPLE_RATE_CODES[rate]


def sample_rate_from_code(code):
    '''Maps a decoded sample rate code to Hz, -1 for unknown codes'''
    return _SAMPLE_RATE_HZ.get(code, -1)


def build_command(cmd, arg=None):
    '''Builds a command frame: two byte code, optional two byte argument and
    a line feed'''
    if len(cmd) != 2:
        raise ValueError('Command code must be 2 bytes, got %r' % (cmd,))
    if arg is None:
        return cmd + COMMAND_TERMINATION
    if len(arg) != 2:
        raise ValueError('Command argument must be 2 bytes, got %r' % (arg,))
    return cmd + arg + COMMAND_TERMINATION


def decode_setting(raw):
    '''Decodes the two digit code of a 5 byte setting info response'''
    return _ascii_to_int(raw[2:4])


class ScanSample(namedtuple('scan_sample',
                            'is_sync angle_raw distance signal_strength '
                            'error_flags')):
    '''Single reading of a revolution.

    angle_raw is fixed point (degrees * 16), distance is in centimeters and
    signal_strength goes from 0 to 255, higher is better. error_flags keeps
    the E0..E6 bits of the flag byte untouched.
    '''

    @classmethod
    def from_string(cls, data):
        packet = bytearray(data)
        if len(packet) < RESPONSE_SCAN_PACKET_LEN:
            raise ValueError('Scan packet too short ({})'.format(packet))
        is_sync = bool(packet[0] & SYNC_MASK)
        angle_raw = packet[1] + (packet[2] << 8)
        distance = packet[3] + (packet[4] << 8)
        return cls(is_sync, angle_raw, distance, packet[5],
                   packet[0] & ERROR_MASK)

    @property
    def angle(self):
        '''Angle in degrees'''
        return self.angle_raw / ANGLE_SCALING_FACTOR

    @property
    def normalized_signal_strength(self):
        return self.signal_strength / 255.0

    def has_error(self, mask=ERROR_MASK):
        return bool(self.error_flags & mask)


class SerialTransport(object):
    '''Blocking byte transport over a pyserial port.

    Opens the port at 8N1 with the DTR line held low.
    '''

    def __init__(self, port, baudrate=DEFAULT_BAUDRATE,
                 timeout=DEFAULT_TIMEOUT):
        self._serial = serial.Serial()
        self._serial.port = port
        self._serial.baudrate = baudrate
        self._serial.bytesize = serial.EIGHTBITS
        self._serial.parity = serial.PARITY_NONE
        self._serial.stopbits = serial.STOPBITS_ONE
        self._serial.timeout = timeout
        self._serial.dtr = False
        try:
            self._serial.open()
        except serial.SerialException as err:
            raise TransportError('Failed to open %s due to: %s'
                                 % (port, err))

    @property
    def is_open(self):
        return self._serial.is_open

    def read(self, size, timeout):
        '''Reads up to `size` bytes, returning early with fewer bytes only
        when `timeout` seconds pass without completing the request'''
        if self._serial.timeout != timeout:
            self._serial.timeout = timeout
        return self._serial.read(size)

    def write(self, data):
        self._serial.write(data)

    def bytes_pending(self):
        return self._serial.in_waiting

    def discard_pending(self):
        self._serial.reset_input_buffer()

    def close(self):
        if not self._serial.is_open:
            return
        try:
            self._serial.close()
        except serial.SerialException as err:
            raise TransportError('Failed to close %s due to: %s'
                                 % (self._serial.port, err))


class LoggingTransport(object):
    '''Wraps a transport and keeps a rolling text log of the last reads and
    writes. Every entry is also sent to the debug logger.'''

    def __init__(self, transport, size=IO_LOG_SIZE, logger=None, clock=None):
        self._transport = transport
        self._clock = clock or time.monotonic
        self._start_time = self._clock()
        self._log = deque(maxlen=size)
        if logger is None:
            logger = logging.getLogger('sweep.io')
        self.logger = logger

    def _now(self):
        return '%06.2f' % (self._clock() - self._start_time)

    def _record(self, msg):
        self.logger.debug(msg)
        self._log.append(msg)

    def read(self, size, timeout):
        initiated_at = self._now()
        data = self._transport.read(size, timeout)
        self._record('%s << %d -> %s %d: %s' % (
            initiated_at, size, self._now(), len(data), _showascii(data)))
        return data

    def write(self, data):
        self._record('%s >> %d: %s' % (self._now(), len(data),
                                       _showascii(data)))
        self._transport.write(data)

    def bytes_pending(self):
        return self._transport.bytes_pending()

    def discard_pending(self):
        self._transport.discard_pending()

    def close(self):
        self._transport.close()

    def get_entire_log(self):
        return '\n'.join(self._log)


class Sweep(object):
    '''Class for communicating with Sweep scanners'''

    def __init__(self, port, baudrate=DEFAULT_BAUDRATE,
                 timeout=DEFAULT_TIMEOUT, logger=None, log_io=True,
                 transport=None):
        '''Initialize Sweep object for communicating with the sensor.

        Parameters
        ----------
        port : str
            Serial port name to which sensor is connected
        baudrate : int, optional
            Baudrate for serial connection (the default is 115200)
        timeout : float, optional
            Timeout in seconds for every single read call (the default is 1)
        logger : logging.Logger instance, optional
            Logger instance, if none is provided new instance is created
        log_io : bool, optional
            Keep a rolling log of the serial traffic (the default is True)
        transport : object, optional
            Already open transport to use instead of opening `port`
        '''
        self._transport = None
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.log_io = log_io
        self.scanning = False
        if logger is None:
            logger = logging.getLogger('sweep')
        self.logger = logger
        self.connect(transport)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.disconnect()

    @property
    def is_scanning(self):
        return self.scanning

    def connect(self, transport=None):
        '''Connects to the serial port with the name `self.port`. If it was
        connected to another serial port disconnects from it first.'''
        if self._transport is not None:
            self.disconnect()
        if transport is None:
            self.logger.info('Connecting to %s', self.port)
            transport = SerialTransport(self.port, self.baudrate,
                                        self.timeout)
        if self.log_io:
            transport = LoggingTransport(transport)
        self._transport = transport
        self.scanning = False

    def disconnect(self):
        '''Disconnects from the serial port'''
        if self._transport is None:
            return
        transport, self._transport = self._transport, None
        self.scanning = False
        transport.close()

    def get_io_log(self):
        '''Returns the recent serial traffic as text, one event per line'''
        if isinstance(self._transport, LoggingTransport):
            return self._transport.get_entire_log()
        return ''

    def _send_cmd(self, cmd, arg=None):
        '''Sends `cmd` command, with optional argument `arg`, to the sensor'''
        req = build_command(cmd, arg)
        self._transport.write(req)
        self.logger.debug('Command sent: %s', _showhex(req))

    def _read_response(self, dsize):
        '''Reads response packet with length of `dsize` bytes.

        Each underlying read gets the full timeout again, so a device
        trickling bytes can keep this going past `self.timeout`. Returns
        None if the packet is not complete when a read times out.
        '''
        self.logger.debug('Trying to read response: %d bytes', dsize)
        data = b''
        while len(data) < dsize:
            chunk = self._transport.read(dsize - len(data), self.timeout)
            if not chunk:
                break
            data += chunk
        if len(data) != dsize:
            self.logger.warning('Timed out reading response: got %d/%d '
                                'bytes', len(data), dsize)
            return None
        self.logger.debug('Received data: %s', _showhex(data))
        return data

    def _flush_input(self):
        self.logger.debug('Discarding %d pending bytes',
                          self._transport.bytes_pending())
        self._transport.discard_pending()

    def _query_setting(self, cmd):
        self._send_cmd(cmd)
        raw = self._read_response(RESPONSE_INFO_SETTING_LEN)
        if raw is None:
            return -1
        code = decode_setting(raw)
        if code < 0:
            self.logger.warning('Malformed setting response: %s',
                                _showhex(raw))
        return code

    def reset(self):
        '''Resets the sensor. No response is awaited.

        Refused while scanning, stop the acquisition first.

        Returns
        -------
        bool
            True if the reset command was sent
        '''
        if self.scanning:
            self.logger.warning('Not resetting while scanning')
            return False
        self.logger.info('Resetting the sensor')
        self._send_cmd(CMD_RESET_DEVICE)
        return True

    def get_motor_ready(self):
        '''Asks whether calibration is done and the motor speed has
        stabilized'''
        if self.scanning:
            return False
        return self._query_setting(CMD_MOTOR_READY) == 0

    def wait_until_motor_ready(self):
        '''Polls the motor ready state, giving up after
        MOTOR_READY_ATTEMPTS tries MOTOR_READY_INTERVAL seconds apart.

        Returns
        -------
        bool
            True once the sensor reported ready
        '''
        if self.scanning:
            return False
        for attempt in range(MOTOR_READY_ATTEMPTS):
            if attempt:
                time.sleep(MOTOR_READY_INTERVAL)
            if self.get_motor_ready():
                return True
        self.logger.warning('Motor not ready after %d attempts',
                            MOTOR_READY_ATTEMPTS)
        return False

    def start_scanning(self):
        '''Starts the data acquisition once the motor is ready.

        Returns
        -------
        bool
            True if the sensor acknowledged, the session is now scanning
        '''
        if self.scanning:
            self.logger.warning('Scanning already running')
            return False
        if not self.wait_until_motor_ready():
            self.logger.warning('Not starting scan, device not ready')
            return False
        self.logger.info('Starting scanning')
        self._send_cmd(CMD_DATA_ACQUISITION_START)
        if self._read_response(RESPONSE_HEADER_LEN) is None:
            return False
        self.scanning = True
        return True

    def stop_scanning(self):
        '''Stops the data acquisition.

        STOP is sent twice: once to stop the stream, then again after the
        input buffer was emptied, so the receipt is not lost among the
        in-flight packets.

        Returns
        -------
        bool
            True if the second STOP was acknowledged
        '''
        self.logger.info('Stopping scanning')
        self._send_cmd(CMD_DATA_ACQUISITION_STOP)
        time.sleep(STOP_DRAIN_DELAY)
        self._flush_input()
        self._send_cmd(CMD_DATA_ACQUISITION_STOP)
        if self._read_response(RESPONSE_HEADER_LEN) is None:
            return False
        self.scanning = False
        return True

    def get_reading(self):
        '''Reads the next sample of the stream.

        Returns
        -------
        ScanSample or None
            None if not scanning or the packet did not arrive in time
        '''
        if not self.scanning:
            return None
        raw = self._read_response(RESPONSE_SCAN_PACKET_LEN)
        if raw is None:
            return None
        return ScanSample.from_string(raw)

    def get_motor_speed(self):
        '''Get motor speed in Hz. Returns 0 while scanning and -1 if the
        response timed out or was malformed.'''
        if self.scanning:
            return 0
        return self._query_setting(CMD_MOTOR_INFORMATION)

    def set_motor_speed(self, speed):
        '''Set motor speed

        Parameters
        ----------
        speed : int
            Motor speed in Hz, one of MOTOR_SPEEDS

        Returns
        -------
        bool
            True if the sensor acknowledged
        '''
        code = motor_speed_code(speed)
        if self.scanning:
            return False
        if not self.wait_until_motor_ready():
            return False
        self.logger.info('Setting motor speed to %d Hz', speed)
        self._send_cmd(CMD_MOTOR_SPEED_ADJUST, code)
        return self._read_response(RESPONSE_PARAM_LEN) is not None

    def get_sample_rate(self):
        '''Get sample rate in Hz. Returns 0 while scanning and -1 if the
        response timed out or holds an unknown code.'''
        if self.scanning:
            return 0
        return sample_rate_from_code(
            self._query_setting(CMD_SAMPLE_RATE_INFORMATION))

    def set_sample_rate(self, rate):
        '''Set sample rate

        Parameters
        ----------
        rate : int
            Sample rate in Hz, one of SAMPLE_RATES

        Returns
        -------
        bool
            True if the sensor acknowledged
        '''
        code = sample_rate_code(rate)
        if self.scanning:
            return False
        self.logger.info('Setting sample rate to %d Hz', rate)
        self._send_cmd(CMD_SAMPLE_RATE_ADJUST, code)
        return self._read_response(RESPONSE_PARAM_LEN) is not None

    def get_device_info(self):
        '''Get device information

        Returns
        -------
        dict or None
            Dictionary with the current device state, None while scanning
            or on timeout
        '''
        if self.scanning:
            return None
        self.logger.info('Asking for device info')
        self._send_cmd(CMD_DEVICE_INFORMATION)
        raw = self._read_response(RESPONSE_INFO_DEVICE_LEN)
        if raw is None:
            return None
        text = raw.decode('ascii', 'replace')
        return {
            'bit_rate': text[2:8],
            'laser_state': text[8],
            'mode': text[9],
            'diagnostic': text[10],
            'motor_speed': _ascii_to_int(raw[11:13]),
            'sample_rate': text[13:17],
        }

    def get_version_info(self):
        '''Get version information

        Returns
        -------
        dict or None
            Dictionary with model, versions and serial number, None while
            scanning or on timeout
        '''
        if self.scanning:
            return None
        self.logger.info('Asking for version info')
        self._send_cmd(CMD_VERSION_INFORMATION)
        raw = self._read_response(RESPONSE_INFO_VERSION_LEN)
        if raw is None:
            return None
        text = raw.decode('ascii', 'replace')
        return {
            'model': text[2:7],
            'protocol': text[7:9],
            'firmware': text[9:11],
            'hardware': text[11],
            'serialnumber': text[12:20],
        }

    def wait_until_responsive(self, timeout=RESPONSIVE_TIMEOUT):
        '''Polls the sample rate until the sensor answers, e.g. after a
        reset.

        Returns
        -------
        bool
            False while scanning or if there was no valid answer within
            `timeout` seconds
        '''
        if self.scanning:
            return False
        deadline = time.monotonic() + timeout
        while self.get_sample_rate() <= 0:
            if time.monotonic() > deadline:
                self.logger.warning('No response within %.1f s', timeout)
                return False
            time.sleep(MOTOR_READY_INTERVAL)
        return True

    def iter_readings(self, stop_event=None):
        '''Iterate over samples until a read fails or `stop_event` is set.
        The event is only checked between reads.

        Parameters
        ----------
        stop_event : threading.Event or any object with is_set(), optional

        Yields
        ------
        ScanSample
        '''
        while stop_event is None or not stop_event.is_set():
            sample = self.get_reading()
            if sample is None:
                self.logger.warning('Could not get reading')
                return
            yield sample

    def iter_scans(self, stop_event=None, min_len=0):
        '''Iterate over revolutions. A revolution ends when the next sync
        sample arrives.

        Parameters
        ----------
        stop_event : threading.Event or any object with is_set(), optional
        min_len : int
            Minimum number of samples in the scan for it to be yielded.

        Yields
        ------
        scan : list
            List of ScanSample, the sync sample first
        '''
        scan_list = []
        for sample in self.iter_readings(stop_event):
            if sample.is_sync:
                if scan_list and len(scan_list) >= min_len:
                    yield scan_list
                scan_list = []
            scan_list.append(sample)
