import os
import re

from setuptools import setup

long_description = """
The script watches the CPU temperature of a small box (typically a
Raspberry Pi) and, when it runs hot, lowers the priority of - or pauses -
the one process that is responsible for the heat.  When the temperature
is back to normal, or when the script exits, the process is restored.
"""

module = 'temp_guard'

basedir = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(basedir, '%s.py' % module)) as f:
    _moduletext = f.read()

def readmeta(fieldname):
    return re.search(r'__%s__\s*=\s*"(.*)"' % re.escape(fieldname), _moduletext).group(1).strip()

setup(
    name='temp-guard',
    version=readmeta('version'),
    description='Simple-Stupid user-space program doing "renice" and "kill -STOP" to protect a box from overheating',
    long_description=long_description.strip(),
    license='GPLv3+',
    url='https://github.com/tobixen/temp-guard',

    author=readmeta('author'),
    author_email=readmeta('email'),

    py_modules=[module],
    zip_safe=False,
    python_requires='>=3.9',

    install_requires=[
        'PyYAML',
        'tomli; python_version < "3.11"',
    ],
    extras_require=dict(
        build=['twine', 'wheel'],
        test=['pytest', 'pytest-cov'],
    ),

    entry_points={
        "console_scripts": ['temp-guard=%s:main' % module]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Topic :: Utilities",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Hardware",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
    ],
)
