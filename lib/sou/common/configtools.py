""" Configtools """

import os
from configparser import ConfigParser


def uniq(l):
    # uniquify the list without scrambling it
    seen = set()
    seen_add = seen.add
    return [x for x in l if x not in seen and not seen_add(x)]


def file_list(root):
    # read the root file, get its [config] section
    # and use it to construct the file list.
    conf = ConfigParser()
    conf.read(root)
    try:
        dirlist = conf.get("config", "path").replace(" ", "").split(",")
    except Exception:
        dirlist = []
    try:
        files = conf.get("config", "files").replace(" ", "").split(",")
    except Exception:
        files = []

    root = os.path.abspath(root)
    # all relative pathnames will be relative to the rootdir
    rootdir = os.path.dirname(root)
    flist = [root]
    dirlist = [
        os.path.abspath(os.path.join(rootdir, x))
        if not os.path.isabs(x)
        else os.path.abspath(x)
        for x in dirlist
    ]
    # insert the directory of the root file at the beginning
    dirlist.insert(0, rootdir)

    for d in dirlist:
        for f in files:
            fnm = os.path.join(d, f)
            if fnm in flist:
                continue
            if os.access(fnm, os.F_OK):
                flist += file_list(fnm)
    return uniq(flist)
