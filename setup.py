#+
# Setuptools script to install DBusWire. Make sure setuptools
# <https://setuptools.pypa.io/en/latest/index.html> is installed.
# Invoke from the command line in this directory as follows:
#
#     python3 setup.py build
#     sudo python3 setup.py install
#
# To run the tests, install the "test" extra and invoke pytest
# in this directory.
#
# Written by Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
#-

import sys
import setuptools
from setuptools.command.build_py import \
    build_py as std_build_py

class my_build_py(std_build_py) :
    "customization of build to perform additional validation."

    def run(self) :
        if sys.version_info < (3, 5) :
            sys.stderr.write("This module requires Python 3.5 or later.\n")
            sys.exit(-1)
        #end if
        super().run()
    #end run

#end my_build_py

setuptools.setup \
  (
    name = "DBusWire",
    version = "1.0",
    description = "pure-Python implementation of the D-Bus wire protocol, for Python 3.5 or later",
    long_description = "marshalling, message framing and authentication for D-Bus,"
        " with no dependency on libdbus, for Python 3.5 or later",
    author = "Lawrence D'Oliveiro",
    author_email = "ldo@geek-central.gen.nz",
    url = "https://github.com/ldo/dbussy",
    license = "LGPL v2.1+",
    py_modules = ["dbuswire"],
    python_requires = ">=3.5",
    extras_require =
        {
            "test" : ["pytest"],
        },
    cmdclass =
        {
            "build_py" : my_build_py,
        },
  )
