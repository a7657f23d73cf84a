"""Package configuration."""

from setuptools import setup, find_packages

from pydfuhost import __version__, __author__

CLASSIFIERS = [
    'Intended Audience :: Developers',
    'Natural Language :: English',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
    'Topic :: Software Development :: Embedded Systems',
    'Topic :: Software Development :: Libraries :: Python Modules'
]

KEYWORDS = 'dfu, dfuse, usb, firmware, stm32, pyusb, libusb'

with open('requirements.txt', 'r') as fp:
    install_requires = [line.strip() for line in fp if line.strip()]

with open('requirements-dev.txt', 'r') as fp:
    dev_requires = [line.strip() for line in fp if line.strip()]

with open('README.md', 'r') as fp:
    long_description = fp.read()

setup(
    name='pydfuhost',
    version=__version__,
    python_requires='>=3.9',

    description='USB DFU 1.1 and ST DfuSe host side firmware update engine',
    long_description=long_description,
    long_description_content_type="text/markdown",

    author=__author__,

    classifiers=CLASSIFIERS,
    keywords=KEYWORDS,

    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=install_requires,

    extras_require={
        "dev": dev_requires,
    },

    entry_points={
        'console_scripts': [
            'pydfuhost=pydfuhost.__main__:main',
        ],
    },

    zip_safe=False,
)
