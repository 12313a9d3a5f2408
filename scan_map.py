#!/usr/bin/python3

import logging
import sys
from math import cos, sin, pi
from PIL import Image, ImageDraw

from sweep import Sweep, SweepException

MAX_S = 3000 # width and heigth of sweep scan map
SCANS = 10   # revolutions to draw
PORT = sys.argv[1] if len(sys.argv) > 1 else '/dev/ttyUSB0'

# handler for console
sh = logging.StreamHandler()

# handler for file
fh = logging.FileHandler(filename="sweep.log")

# create formatter
formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
# add formatter only for file logging
fh.setFormatter(formatter)

logger = logging.getLogger('sweep')
logger.setLevel(logging.DEBUG)
## suppress to print debug message in console
# logger.addHandler(sh)
# write debug info to sweep.log file
logger.addHandler(fh)


def collect(sweep):
    '''Runs the start-up sequence and returns up to SCANS revolutions'''
    sweep.reset()
    if not sweep.wait_until_responsive():
        print("Timeout while waiting for response after resetting device")
        return []

    if not sweep.set_motor_speed(5):
        print("Failed to set motor speed")
        return []

    speed = sweep.get_motor_speed()
    if speed < 0:
        print("Could not verify motor speed")
        return []
    rate = sweep.get_sample_rate()
    if rate < 0:
        print("Could not verify sample rate")
        return []
    print("Motor speed %d Hz, sample rate %d Hz" % (speed, rate))
    print("Device info: " + str(sweep.get_device_info()))
    print("Version info: " + str(sweep.get_version_info()))

    if not sweep.start_scanning():
        print("Could not start scan")
        return []

    scans = []
    for i, scan in enumerate(sweep.iter_scans(min_len=5)):
        print('%d: Got %d samples' % (i, len(scan)))
        scans.append(scan)
        if i + 1 >= SCANS:
            break
    if not sweep.stop_scanning():
        print("Device did not acknowledge stop")
    return scans


try:
    SWEEP = Sweep(PORT)
except SweepException as err:
    print(err)
    sys.exit(1)

try:
    SCAN_LIST = collect(SWEEP)
finally:
    SWEEP.disconnect()

if not SCAN_LIST:
    sys.exit(1)

# farthest point of all revolutions, in cm
MAX_D = max(s.distance for scan in SCAN_LIST for s in scan) or 1

# prepare sweep map image, one thin ring per meter
R1 = int(MAX_D / 100) + 2

color = (255, 255, 255)
img = Image.new('RGB', (MAX_S+10, MAX_S+10), color)
draw = ImageDraw.Draw(img)

for d in range(R1):
    r = d * 100 / MAX_D * MAX_S/2
    draw.ellipse([MAX_S/2+5-r, MAX_S/2+5-r, MAX_S/2+5+r, MAX_S/2+5+r], None, (223, 223, 223), 1)
    draw.text((int(MAX_S/2+5), int(MAX_S/2+5-r)), "{:d} m".format(d), (0, 63, 127))
draw.line([MAX_S/2+5, 5, MAX_S/2+5, MAX_S+5], (223, 223, 223), 1 )
draw.line([5, MAX_S/2+5, MAX_S+5, MAX_S/2+5], (223, 223, 223), 1 )

for scan in SCAN_LIST:
    for sample in scan:
        if sample.distance > 0:           # ignore samples without echo
            radians = sample.angle * pi / 180.0
            x = sample.distance * sin(radians)
            y = -sample.distance * cos(radians)
            p_x = int(MAX_S/2 + 5 + x / MAX_D * MAX_S/2)
            p_y = int(MAX_S/2 + 5 + y / MAX_D * MAX_S/2)
            if 0 < p_x < MAX_S+10 and 0 < p_y < MAX_S+10:
                # darker red for stronger echoes
                img.putpixel((p_x, p_y), (sample.signal_strength, 0, 0))
            else:
                print(f'out of range - {sample.angle}: {sample.distance} -> {p_x}x{p_y}')

img.save("sweep-map.png")
