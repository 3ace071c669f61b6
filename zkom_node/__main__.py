import sys

from zkom_node.main import main


sys.exit(main())
