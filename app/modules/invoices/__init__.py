"""
Módulo de Facturación (Invoices)

Emisión de comprobantes (facturas, boletas, notas de crédito y débito) con
numeración correlativa por empresa, tipo de documento y serie:

- calculator.py: montos por línea y totales con redondeo comercial
- service.py: InvoiceIssuer (emisión atómica) e InvoiceService (consultas)
- router.py: endpoints REST

La factura emitida queda en estado draft; el envío a SUNAT, el XML y el PDF
los maneja un integrador externo que actualiza sunat_status.

Tablas principales:
- invoices: Cabecera de la factura
- invoice_lines: Líneas con el IGV congelado al momento de emitir
"""
