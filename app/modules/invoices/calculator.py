"""
Cálculo de montos por línea y totales de factura.

Funciones puras sobre Decimal: sin acceso a base de datos y deterministas.
El redondeo es comercial (ROUND_HALF_UP) a 2 decimales, se aplica una sola
vez a cada monto de línea y los totales de la factura son la suma de los
montos de línea ya redondeados.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Optional

from app.common.exceptions import InvalidLineInputError
from app.modules.invoices.schemas import LineAmounts, InvoiceTotals

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
ZERO = Decimal('0.00')


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value, field: str, line_index: Optional[int] = None) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidLineInputError(f"Valor inválido para {field}: {value!r}", line_index=line_index)
    if not result.is_finite():
        raise InvalidLineInputError(f"Valor inválido para {field}: {value!r}", line_index=line_index)
    return result


class LineItemCalculator:
    """Helper para calcular los montos de cada línea y de la factura"""

    def calculate_line(
        self,
        quantity,
        unit_price,
        discount_rate,
        tax_rate,
        line_index: Optional[int] = None
    ) -> LineAmounts:
        """
        Calcular subtotal, descuento, impuesto y total de una línea

        Args:
            quantity: Cantidad (> 0, admite decimales)
            unit_price: Precio unitario sin impuestos (>= 0)
            discount_rate: Porcentaje de descuento [0, 100]
            tax_rate: Porcentaje de impuesto [0, 100]
            line_index: Posición de la línea, se reporta en el error

        Returns:
            Montos de la línea, ya redondeados
        """
        quantity = to_decimal(quantity, "quantity", line_index)
        unit_price = to_decimal(unit_price, "unit_price", line_index)
        discount_rate = to_decimal(discount_rate, "discount_rate", line_index)
        tax_rate = to_decimal(tax_rate, "tax_rate", line_index)

        if quantity <= 0:
            raise InvalidLineInputError("La cantidad debe ser mayor a 0", line_index=line_index)
        if unit_price < 0:
            raise InvalidLineInputError("El precio unitario no puede ser negativo", line_index=line_index)
        if not (0 <= discount_rate <= HUNDRED):
            raise InvalidLineInputError("El descuento debe estar entre 0 y 100", line_index=line_index)
        if not (0 <= tax_rate <= HUNDRED):
            raise InvalidLineInputError("La tasa de impuesto debe estar entre 0 y 100", line_index=line_index)

        gross = quantity * unit_price
        discount = gross * discount_rate / HUNDRED
        net_base = round_money(gross - discount)
        tax = round_money(net_base * tax_rate / HUNDRED)

        return LineAmounts(
            quantity=quantity,
            unit_price=unit_price,
            discount_rate=discount_rate,
            tax_rate=tax_rate,
            discount_amount=round_money(discount),
            subtotal=net_base,
            tax_amount=tax,
            total_amount=net_base + tax
        )

    def calculate_totals(self, lines: Iterable[LineAmounts]) -> InvoiceTotals:
        """Sumar los montos ya redondeados de cada línea (sin re-redondear)"""
        subtotal = ZERO
        tax_amount = ZERO
        discount_amount = ZERO

        for line in lines:
            subtotal += line.subtotal
            tax_amount += line.tax_amount
            discount_amount += line.discount_amount

        return InvoiceTotals(
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            total_amount=subtotal + tax_amount
        )
