import pint

# the same unit registry instance should be shared across everything
# don't raise warnings when redefining units
u = pint.UnitRegistry(on_redefinition='ignore')
