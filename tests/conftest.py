import os
import tempfile

os.environ.setdefault("EXPENSES_DATA_DIR", tempfile.mkdtemp(prefix="expenses-test-"))
os.environ.setdefault("EXPENSES_CATEGORY_BUDGETS", "Food=100,Transport=50,Rent=800,Other=30")
os.environ.setdefault("EXPENSES_BCRYPT_ROUNDS", "4")
os.environ.setdefault("EXPENSES_TIMEZONE", "UTC")
